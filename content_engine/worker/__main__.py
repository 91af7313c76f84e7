import argparse
import asyncio
import logging
import sys

from content_engine.domain.errors import ConfigurationError
from content_engine.settings import settings

logger = logging.getLogger("content_engine.worker")


async def main(args: argparse.Namespace) -> int:
    from content_engine.db.session import engine, queue_engine, init_models
    from content_engine.services.generation import HttpContentGenerator
    from content_engine.worker.runner import WorkerRunner

    if args.init_db:
        await init_models(engine, queue_engine)

    generator = HttpContentGenerator()
    runner = WorkerRunner(
        generator,
        concurrency=args.concurrency,
        worker_type=args.worker_type,
    )
    try:
        await runner.run()
    finally:
        await generator.close()
    return 0


def cli(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run a content hydration worker")
    parser.add_argument("--concurrency", type=int, default=settings.WORKER_CONCURRENCY)
    parser.add_argument("--worker-type", default=settings.WORKER_TYPE)
    parser.add_argument("--init-db", action="store_true", help="create tables before starting")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(main(args))
    except ConfigurationError as e:
        logger.error("Worker cannot start: %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(cli())
