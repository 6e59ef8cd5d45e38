"""Command templates and builders for OpenVPN process management."""

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple


class CommandError(Exception):
    """Base exception for command-related errors."""
    pass


class ValidationError(CommandError):
    """Raised when command validation fails."""
    pass


def _option_key(name: str) -> str:
    return name.lstrip('-').replace('-', '_')


def _option_flag(name: str) -> str:
    return '--' + _option_key(name).replace('_', '-')


@dataclass(frozen=True)
class Command:
    """Immutable argv builder.

    When ``valid_options`` is given, only those ``--options`` may be added
    and their values must convert to the mapped type.
    """
    argv: Tuple[str, ...]
    valid_options: Optional[Mapping[str, type]] = None

    def __post_init__(self):
        if not self.argv:
            raise ValidationError("Command cannot be empty")

    @classmethod
    def from_str(cls, cmd: str, valid_options: Optional[Mapping[str, type]] = None) -> 'Command':
        """Create command from a whitespace separated string."""
        return cls(tuple(cmd.split()), valid_options)

    @classmethod
    def for_executable(cls, path: Path, valid_options: Optional[Mapping[str, type]] = None) -> 'Command':
        """Create command for an executable whose path may contain spaces."""
        return cls((str(path),), valid_options)

    @property
    def program(self) -> str:
        return self.argv[0]

    def _check_option(self, name: str, value: Optional[str]) -> None:
        if self.valid_options is None:
            return

        key = _option_key(name)
        if key not in self.valid_options:
            allowed = ", ".join(_option_flag(k) for k in self.valid_options)
            raise ValidationError(
                f"Invalid option '{_option_flag(name)}' for command {self.program}. "
                f"Valid options are: {allowed}"
            )

        expected = self.valid_options[key]
        if value is None or expected is Path:
            return
        try:
            expected(value)
        except ValueError:
            raise ValidationError(
                f"Invalid value '{value}' for option '{_option_flag(name)}'. Expected {expected.__name__}"
            )

    def with_arg(self, arg: str) -> 'Command':
        """Add single argument."""
        return self.with_args(arg)

    def with_args(self, *args: str) -> 'Command':
        """Add multiple arguments."""
        return Command(self.argv + args, self.valid_options)

    def with_options(self, **kwargs) -> 'Command':
        """Add ``--name value`` pairs; a ``None`` value adds a bare flag."""
        argv = list(self.argv)
        for name, value in kwargs.items():
            text = None if value is None else str(value)
            self._check_option(name, text)
            argv.append(_option_flag(name))
            if text is not None:
                argv.append(text)
        return Command(tuple(argv), self.valid_options)

    def build(self) -> list[str]:
        """Get final command list."""
        return list(self.argv)

    def as_shell(self) -> str:
        """Get final command as a single quoted shell string."""
        return shlex.join(self.argv)


OPENVPN_OPTIONS = {
    'config': Path,
}

KILLALL = Command.from_str("killall")
KILLALL_FORCE = KILLALL.with_arg("-9")

# -k drops any cached timestamp so the password on stdin is really checked
SUDO_VALIDATE = Command.from_str("sudo -k -S -p").with_args("", "-v")
