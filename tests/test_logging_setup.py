import logging

from songforge.logging_setup import setup_logging


def test_console_and_file_handlers(tmp_path):
    logger = setup_logging(tmp_path / "logs", level=logging.DEBUG)
    assert logger.name == "songforge"
    assert logger.level == logging.DEBUG
    assert logger.propagate is False
    assert len(logger.handlers) == 2

    logging.getLogger("songforge.test").info("hello")
    for h in logger.handlers:
        h.flush()
    text = (tmp_path / "logs" / "songforge.log").read_text(encoding="utf-8")
    assert "| INFO | songforge.test | hello" in text


def test_reconfigure_replaces_handlers(tmp_path):
    setup_logging(tmp_path)
    logger = setup_logging(None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.StreamHandler)
