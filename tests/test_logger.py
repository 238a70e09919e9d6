import logging

from send_scheduler.logger import ROOT_LOGGER_NAME, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("dispatch")
    handler_count = len(logger.handlers)

    same_logger = get_logger("dispatch")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_component_loggers_are_children_of_root():
    root = get_logger()
    child = get_logger("control")
    assert root.name == ROOT_LOGGER_NAME
    assert child.name == f"{ROOT_LOGGER_NAME}.control"
    assert child.parent is root
    assert isinstance(child, logging.Logger)
