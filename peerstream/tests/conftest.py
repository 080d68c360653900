from __future__ import annotations

import logging

import pytest

from peerstream.logging import ROOT_LOGGER


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """configure_logging() detaches the package logger from root; undo that."""
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
