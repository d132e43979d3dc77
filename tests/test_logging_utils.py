"""Tests for logging setup."""

import logging

import pytest

from logging_utils import setup_logging


@pytest.fixture
def clean_root_logger():
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers[:]:
        if handler not in before:
            handler.close()
            root.removeHandler(handler)
    root.setLevel(level)


def test_adds_file_and_console_handlers(tmp_path, clean_root_logger):
    logger = setup_logging('unit', verbose_console_logging=False, log_dir=tmp_path)
    ours = [h for h in logger.handlers if getattr(h, '_rate_gate_handler', False)]
    assert len(ours) == 2
    assert (tmp_path / 'unit.log').exists()

    console = [h for h in ours if type(h) is logging.StreamHandler][0]
    assert console.level == logging.WARNING


def test_repeated_calls_do_not_duplicate(tmp_path, clean_root_logger):
    setup_logging('unit', log_dir=tmp_path)
    logger = setup_logging('unit', log_dir=tmp_path)
    ours = [h for h in logger.handlers if getattr(h, '_rate_gate_handler', False)]
    assert len(ours) == 2
