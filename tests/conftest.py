import logging

import pytest


@pytest.fixture(autouse=True)
def restore_root_logger():
    """The CLI reconfigures the root logger; put it back after every test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
