"""Application entry point for the ExamDesk API."""

from __future__ import annotations

from exam_app.constants.about import APP_NAME, APP_VERSION
from exam_app.core.exam_manager import ExamManager
from exam_app.core.storage import InMemoryExamStorage
from exam_app.server.api_server import run_api_server
from exam_app.settings import get_settings
from exam_app.utils.logging_config import configure_logging


def main() -> None:
    """Initialize logging, seed the store and serve the exam API."""
    settings = get_settings()
    logger = configure_logging(settings.log_level)
    logger.info("Starting %s %s", APP_NAME, APP_VERSION)

    if settings.seed_path is not None:
        storage = InMemoryExamStorage.from_seed_file(settings.seed_path)
        logger.info("Seeded in-memory store from %s", settings.seed_path)
    else:
        storage = InMemoryExamStorage()
        logger.warning("No EXAM_SEED_PATH configured; starting with an empty store.")

    exam_manager = ExamManager(storage=storage, config=settings.engine_config())
    run_api_server(exam_manager, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
