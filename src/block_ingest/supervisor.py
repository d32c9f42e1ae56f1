import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .adapters.base import ChainAdapter
from .channel.base import MessageChannel, topic_name
from .config import Config
from .errors import IngestionError, PermanentAdapterError
from .persister import Persister
from .producers.historical import BackfillCoordinator, BackfillResult, BackfillState
from .producers.realtime import RealtimeSubscriber
from .storage.row_store import RowStore
from .types import IngestionTask, TaskMode
from .utils.retry import sleep_or_stop

logger = logging.getLogger(__name__)


class Supervisor:
    """Owns every producer and persister task of the process.

    All tasks share one stop event. A producer that fails with a
    PermanentAdapterError or an unexpected exception ends on its own, other
    ingestion errors restart it with backoff. Persisters are restarted after
    any error, so every topic keeps a consumer. Healthy tasks keep running
    either way.
    """

    def __init__(
        self,
        config: Config,
        channel: MessageChannel,
        store: RowStore,
        adapters: Dict[str, ChainAdapter],
        stop: Optional[asyncio.Event] = None,
    ):
        self.config = config
        self.channel = channel
        self.store = store
        self.adapters = adapters
        self.stop = stop if stop is not None else asyncio.Event()

        self.backfill_results: Dict[str, BackfillResult] = {}
        self.failures: Dict[str, BaseException] = {}
        self.crashes: Dict[str, int] = {}
        self.persisters: Dict[str, Persister] = {}
        self.subscribers: Dict[str, RealtimeSubscriber] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def build_tasks(self) -> List[IngestionTask]:
        tasks = []

        for chain_name, chain in self.config.blockchains.items():
            for schema in chain.schemas:
                if chain.start_block is not None:
                    tasks.append(
                        IngestionTask(
                            chain_name=chain_name,
                            schema=schema,
                            mode=TaskMode.HISTORICAL,
                            start_block=chain.start_block,
                            end_block=chain.end_block,
                        )
                    )
                if chain.realtime:
                    tasks.append(
                        IngestionTask(chain_name=chain_name, schema=schema, mode=TaskMode.REALTIME)
                    )

        return tasks

    def topic_for(self, task: IngestionTask) -> str:
        return topic_name(
            self.config.channel.topic_prefix, task.chain_name, task.schema, task.mode
        )

    def request_stop(self) -> None:
        if not self.stop.is_set():
            logger.info("Stop requested, shutting down")
            self.stop.set()

    async def _supervise(
        self,
        name: str,
        run: Callable[[], Awaitable[None]],
        restart_on_crash: bool = False,
    ) -> None:
        """Run a task, restarting it on ingestion errors.

        With `restart_on_crash` unexpected exceptions restart the task too,
        otherwise they end it.
        """
        attempt = 0

        while not self.stop.is_set():
            try:
                await run()
                return
            except PermanentAdapterError as e:
                logger.error(f"Task {name} stopped: {e}")
                self.failures[name] = e
                return
            except IngestionError as e:
                delay = self.config.restart.delay_for(attempt)
                attempt += 1
                logger.warning(f"Task {name} failed: {e}. restarting in {delay:.2f}s")
                if await sleep_or_stop(delay, self.stop):
                    return
            except Exception as e:
                if not restart_on_crash:
                    logger.exception(f"Task {name} crashed: {e}")
                    self.failures[name] = e
                    return

                self.crashes[name] = self.crashes.get(name, 0) + 1
                delay = self.config.restart.delay_for(attempt)
                attempt += 1
                logger.exception(f"Task {name} crashed: {e}. restarting in {delay:.2f}s")
                if await sleep_or_stop(delay, self.stop):
                    return

    async def _run_backfill(self, task: IngestionTask) -> None:
        coordinator = BackfillCoordinator(
            self.adapters[task.chain_name],
            self.channel,
            task,
            self.topic_for(task),
            self.config.fetch_retry,
            self.config.publish_retry,
            stop=self.stop,
        )
        attempt = 0
        last_next_block = coordinator.current_block

        while True:
            result = await coordinator.run()
            self.backfill_results[task.name] = result

            if result.state != BackfillState.ABORTED:
                logger.info(
                    f"Backfill {task.name} finished as {result.state.value} after {result.published} blocks"
                )
                return

            if isinstance(result.error, PermanentAdapterError):
                logger.error(f"Backfill {task.name} stopped at block {result.next_block}: {result.error}")
                self.failures[task.name] = result.error
                return

            if result.next_block > last_next_block:
                attempt = 0
            last_next_block = result.next_block

            delay = self.config.restart.delay_for(attempt)
            attempt += 1
            logger.warning(
                f"Restarting backfill {task.name} from block {result.next_block} in {delay:.2f}s"
            )
            if await sleep_or_stop(delay, self.stop):
                return

    async def _make_subscriber(self, task: IngestionTask) -> RealtimeSubscriber:
        chain = self.config.blockchains[task.chain_name]

        watermark = None
        if chain.resume_realtime:
            watermark = await self.store.max_block_number(task.chain_name)
            if watermark is not None:
                logger.info(f"Resuming {task.name} after persisted block {watermark}")

        return RealtimeSubscriber(
            self.adapters[task.chain_name],
            self.channel,
            task,
            self.topic_for(task),
            self.config.fetch_retry,
            self.config.publish_retry,
            stop=self.stop,
            reconnect=self.config.reconnect,
            watermark=watermark,
        )

    async def _run_realtime(self, task: IngestionTask) -> None:
        subscriber = self.subscribers.get(task.name)
        if subscriber is None:
            subscriber = await self._make_subscriber(task)
            self.subscribers[task.name] = subscriber

        await subscriber.run()

    def _persister_for(self, topic: str) -> Persister:
        persister = self.persisters.get(topic)
        if persister is None:
            persister = Persister(
                self.channel,
                self.store,
                topic,
                self.config.channel.subscription,
                retry=self.config.restart,
                stop=self.stop,
            )
            self.persisters[topic] = persister
        return persister

    def _start(
        self, name: str, run: Callable[[], Awaitable[None]], restart_on_crash: bool = False
    ) -> None:
        self._tasks[name] = asyncio.create_task(
            self._supervise(name, run, restart_on_crash), name=name
        )

    async def _shutdown(self) -> None:
        running = [task for task in self._tasks.values() if not task.done()]
        if not running:
            return

        timeout = self.config.shutdown_timeout_s
        logger.info(f"Waiting up to {timeout}s for {len(running)} tasks to stop")
        _, pending = await asyncio.wait(running, timeout=timeout)

        for task in pending:
            logger.warning(f"Task {task.get_name()} did not stop in time, cancelling")
            task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(self) -> None:
        """Start every task and wait until all of them end or stop is requested"""
        tasks = self.build_tasks()
        logger.info(f"Starting tasks: {[task.name for task in tasks]}")

        for task in tasks:
            topic = self.topic_for(task)

            if task.mode == TaskMode.HISTORICAL:
                self._start(task.name, lambda task=task: self._run_backfill(task))
            else:
                self._start(task.name, lambda task=task: self._run_realtime(task))

            persister = self._persister_for(topic)
            self._start(f"persister-{topic}", persister.run, restart_on_crash=True)

        stop_waiter = asyncio.create_task(self.stop.wait(), name="stop-waiter")
        try:
            while not self.stop.is_set():
                running = {task for task in self._tasks.values() if not task.done()}
                if not running:
                    break
                await asyncio.wait(running | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            await self._shutdown()

        logger.info(f"All tasks stopped. failed tasks: {list(self.failures.keys())}")
