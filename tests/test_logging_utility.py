from gateaway.logging_utility import Logger, logger


def test_logger_is_a_singleton():
    assert Logger() is Logger()
    assert Logger().get_logger() is logger


def test_setup_twice_keeps_one_file_handler():
    instance = Logger()
    before = len(instance.logger.handlers)

    instance._setup_logger()

    assert len(instance.logger.handlers) == before
