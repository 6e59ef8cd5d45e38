import logging
import os
from logging.handlers import RotatingFileHandler


class Logger:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Logger, cls).__new__(cls)
            cls._instance._setup_logger()
        return cls._instance

    def _setup_logger(self):
        self.logger = logging.getLogger('GateAway')
        self.logger.setLevel(os.environ.get('GATEAWAY_LOG_LEVEL', 'INFO').upper())

        log_dir = os.environ.get(
            'GATEAWAY_LOG_DIR',
            os.path.join(os.path.expanduser('~'), '.gateaway', 'logs'),
        )
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, 'gateaway.log')

        # Rotate at 5 MiB, keep three backups
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024,
                                           backupCount=3)
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s:%(lineno)d - %(pathname)s - %(message)s')
        file_handler.setFormatter(formatter)

        # A reloaded module must not attach a second handler to the same file
        if not any(getattr(h, "baseFilename", None) == file_handler.baseFilename
                   for h in self.logger.handlers):
            self.logger.addHandler(file_handler)
        else:
            file_handler.close()

    def get_logger(self):
        return self.logger


logger = Logger().get_logger()
