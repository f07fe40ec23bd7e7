from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

from neuro_logging import init_logging, setup_sentry

from .base import ShutdownToken, Sink
from .config import Config, OutputType
from .config_factory import EnvironConfigFactory
from .kube_client import KubeClient, create_kube_client
from .manager import TailManager, create_restart_policy
from .sinks import ConsoleSink, NDJSONExportSink
from .tail import ContentFilter, TailOptions
from .watcher import Selector, TargetWatcher


logger = logging.getLogger(__name__)


async def create_sinks(config: Config, exit_stack: AsyncExitStack) -> list[Sink]:
    sinks: list[Sink] = []
    if OutputType.CONSOLE in config.outputs:
        selector = config.selector
        sinks.append(
            ConsoleSink(
                timestamps=config.tail.timestamps,
                show_namespace=selector.all_namespaces or len(selector.namespaces) > 1,
            )
        )
    if OutputType.EXPORT in config.outputs:
        export = config.export
        if export.path == "-":
            stream = sys.stdout.buffer
            close_stream = False
        else:
            stream = open(export.path, "ab")  # noqa: SIM115
            close_stream = True
        logger.info("Exporting log records to %s", export.path)
        sinks.append(
            await exit_stack.enter_async_context(
                NDJSONExportSink(
                    stream,
                    batch_size=export.batch_size,
                    queue_size=export.queue_size,
                    timeout_s=export.timeout_s,
                    close_stream=close_stream,
                )
            )
        )
    return sinks


def create_tail_options(config: Config) -> TailOptions:
    return TailOptions(
        follow=config.tail.follow,
        since_seconds=config.tail.since_seconds,
        tail_lines=config.tail.tail_lines,
        only_log_lines=config.tail.only_log_lines,
    )


class App:
    config: Config
    kube_client: KubeClient
    watcher: TargetWatcher
    manager: TailManager

    @asynccontextmanager
    async def init(self, config: Config, shutdown: ShutdownToken) -> AsyncIterator[App]:
        self.config = config

        selector = Selector.from_config(config.selector)
        content_filter = ContentFilter(
            include=config.tail.include,
            exclude=config.tail.exclude,
            highlight=config.tail.highlight,
        )

        async with AsyncExitStack() as exit_stack:
            logger.info("Initializing Kube client")
            self.kube_client = await exit_stack.enter_async_context(
                create_kube_client(config.kube)
            )

            logger.info("Initializing sinks")
            sinks = await create_sinks(config, exit_stack)

            self.watcher = TargetWatcher(self.kube_client, selector, shutdown=shutdown)
            self.manager = TailManager(
                self.kube_client,
                sinks,
                tail_options=create_tail_options(config),
                content_filter=content_filter,
                max_concurrent_tails=config.tail.max_concurrent_tails,
                restart_policy=create_restart_policy(config.restart),
                resume=config.tail.resume,
                shutdown=shutdown,
            )

            yield self

    async def run(self) -> None:
        try:
            if self.config.tail.follow:
                logger.info("Watching pods")
                async with self.watcher.watch() as events:
                    await self.manager.run(events)
            else:
                targets = await self.watcher.list_targets()
                logger.info("Tailing %d containers", len(targets))
                await self.manager.tail_targets(
                    targets, max_log_requests=self.config.tail.max_log_requests
                )
        finally:
            await self.manager.shutdown(self.config.shutdown_timeout_s)


def _setup(shutdown: ShutdownToken) -> None:  # pragma: no cover
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, shutdown.set)
    loop.add_signal_handler(signal.SIGTERM, shutdown.set)


def _cleanup() -> None:  # pragma: no cover
    loop = asyncio.get_running_loop()
    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)


async def run_app(config: Config) -> None:  # pragma: no cover
    shutdown = ShutdownToken()
    _setup(shutdown)

    try:
        async with App().init(config, shutdown) as app:
            await app.run()
    finally:
        _cleanup()


def main() -> None:  # pragma: no cover
    init_logging()
    config = EnvironConfigFactory().create()
    logger.info("Loaded config: %r", config)
    setup_sentry()
    asyncio.run(run_app(config))
