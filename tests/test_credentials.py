from unittest.mock import AsyncMock

import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from gateaway.vpn.credentials import SudoCredentialProvider
from gateaway.vpn.exceptions import (
    AuthenticationCancelled,
    AuthenticationFailed,
    CommandFailed,
    PermissionDenied,
)


@pytest.fixture
def no_keyring(monkeypatch):
    monkeypatch.setattr("gateaway.vpn.credentials.keyring.get_password", lambda service, account: None)


@pytest.fixture
def run_command(monkeypatch):
    mock = AsyncMock(return_value=("", ""))
    monkeypatch.setattr("gateaway.vpn.credentials.run_command", mock)
    return mock


@pytest.mark.asyncio
async def test_keyring_password_is_used_without_prompting(monkeypatch, run_command):
    monkeypatch.setattr("gateaway.vpn.credentials.keyring.get_password",
                        lambda service, account: "from-keyring")
    prompts = []
    provider = SudoCredentialProvider(prompt=lambda: prompts.append(1))

    await provider.ensure_authenticated()

    assert provider.has_credentials
    assert prompts == []
    run_command.assert_not_called()


@pytest.mark.asyncio
async def test_keyring_errors_fall_back_to_prompt(monkeypatch, run_command):
    def broken(service, account):
        raise KeyringError("locked")

    monkeypatch.setattr("gateaway.vpn.credentials.keyring.get_password", broken)
    provider = SudoCredentialProvider(prompt=lambda: "typed")

    await provider.ensure_authenticated()

    assert provider.has_credentials
    assert run_command.call_args.kwargs["input_text"] == "typed\n"


@pytest.mark.asyncio
async def test_cancelled_prompt(no_keyring, run_command):
    provider = SudoCredentialProvider(prompt=lambda: None)

    with pytest.raises(AuthenticationCancelled):
        await provider.ensure_authenticated()
    assert not provider.has_credentials


@pytest.mark.asyncio
async def test_rejected_passwords_exhaust_prompts(no_keyring, run_command):
    run_command.side_effect = CommandFailed("sudo failed", returncode=1, stderr="Sorry, try again.")
    prompts = []

    def prompt():
        prompts.append(1)
        return "wrong"

    provider = SudoCredentialProvider(prompt=prompt, max_prompts=2)

    with pytest.raises(AuthenticationFailed):
        await provider.ensure_authenticated()
    assert len(prompts) == 2


@pytest.mark.asyncio
async def test_cached_password_is_not_revalidated(no_keyring, run_command):
    provider = SudoCredentialProvider(prompt=lambda: "pw")

    await provider.ensure_authenticated()
    await provider.ensure_authenticated()

    assert run_command.call_count == 1


@pytest.mark.asyncio
async def test_privileged_run_feeds_password_to_sudo(no_keyring, run_command):
    provider = SudoCredentialProvider(prompt=lambda: "pw")
    await provider.ensure_authenticated()
    run_command.reset_mock()
    run_command.return_value = ("done\n", "")

    output = await provider.run("killall openvpn", privileged=True)

    assert output == "done\n"
    args, kwargs = run_command.call_args
    assert args[0][:2] == ["sudo", "-S"]
    assert args[0][-1] == "killall openvpn"
    assert kwargs["input_text"] == "pw\n"


@pytest.mark.asyncio
async def test_sudo_rejection_clears_cache(no_keyring, run_command):
    provider = SudoCredentialProvider(prompt=lambda: "pw")
    await provider.ensure_authenticated()
    run_command.side_effect = CommandFailed("sudo", returncode=1, stderr="sudo: 1 incorrect password attempt")

    with pytest.raises(PermissionDenied):
        await provider.run("true", privileged=True)
    assert not provider.has_credentials


@pytest.mark.asyncio
async def test_unprivileged_run_skips_sudo(no_keyring, run_command):
    provider = SudoCredentialProvider(prompt=lambda: pytest.fail("should not prompt"))

    await provider.run("echo hi")

    assert run_command.call_args.args[0] == ["/bin/sh", "-c", "echo hi"]


def test_store_and_forget_password(monkeypatch):
    vault = {}
    monkeypatch.setattr("gateaway.vpn.credentials.keyring.set_password",
                        lambda service, account, password: vault.__setitem__((service, account), password))
    monkeypatch.setattr("gateaway.vpn.credentials.keyring.delete_password",
                        lambda service, account: vault.pop((service, account)))
    provider = SudoCredentialProvider(service="GateAwayTest", account="me")

    provider.store_password("pw")
    assert vault == {("GateAwayTest", "me"): "pw"}
    assert provider.has_credentials

    provider.forget_password()
    assert vault == {}
    assert not provider.has_credentials


def test_forget_without_stored_password(monkeypatch):
    def missing(service, account):
        raise PasswordDeleteError("not found")

    monkeypatch.setattr("gateaway.vpn.credentials.keyring.delete_password", missing)
    provider = SudoCredentialProvider()

    provider.forget_password()

    assert not provider.has_credentials
