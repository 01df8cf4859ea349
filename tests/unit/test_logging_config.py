import logging

import pytest

from stackup.UTILS.logging_config import setup_logging, _parse_level


@pytest.mark.parametrize('name, expected', [
    ('debug', logging.DEBUG),
    ('INFO', logging.INFO),
    (None, logging.WARNING),
    ('', logging.WARNING),
    ('chatty', logging.WARNING),
])
def test_parse_level(name, expected):
    assert _parse_level(name) == expected


def test_setup_logging_replaces_handlers():
    setup_logging('INFO')
    setup_logging('DEBUG')
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.DEBUG
    assert '%(lineno)d' in root.handlers[0].formatter._fmt
