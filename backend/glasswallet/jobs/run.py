import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from glasswallet.infra.db import dispose_engine, get_session_factory
from glasswallet.infra.logging import clear_log_context, configure_logging, update_log_context
from glasswallet.jobs import outbox
from glasswallet.services import AppServices, build_app_services
from glasswallet.settings import settings

logger = logging.getLogger(__name__)

JOB_NAMES = ("outbox-delivery",)


async def _run_job(
    name: str,
    session_factory: async_sessionmaker,
    runner: Callable[[object], Awaitable[dict[str, int]]],
) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        return result
    finally:
        clear_log_context()


def _job_runner(name: str, services: AppServices) -> Callable:
    if name == "outbox-delivery":
        return lambda session: outbox.run_outbox_delivery(session, services.outbox_adapters())
    raise ValueError(f"unknown_job:{name}")


async def run_once(
    services: AppServices,
    session_factory: async_sessionmaker,
    job_names: list[str] | tuple[str, ...] = JOB_NAMES,
) -> dict[str, dict[str, int]]:
    results: dict[str, dict[str, int]] = {}
    for name in job_names:
        try:
            results[name] = await _run_job(name, session_factory, _job_runner(name, services))
        except Exception as exc:  # noqa: BLE001
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
    return results


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run GlassWallet background jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--interval", type=int, default=30, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    services = build_app_services(settings)
    session_factory = get_session_factory()
    job_names = args.jobs or list(JOB_NAMES)

    try:
        while True:
            await run_once(services, session_factory, job_names)
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await services.close()
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
