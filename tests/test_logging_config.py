import logging

from pettrack_payments.logging_config import HANDLER_NAME, configure_logging


def test_configure_logging_installs_one_named_handler():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        configure_logging("debug")
        configure_logging("warning")

        ours = [h for h in root.handlers if h.get_name() == HANDLER_NAME]
        assert len(ours) == 1
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)
