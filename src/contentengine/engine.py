from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .channels import ChannelDistributor, ChannelRegistry, WebhookChannel
from .collaborators import Generator, Notifier, Publisher, Scorer
from .config import Config, load_runtime_config
from .contexts import ContextRepository
from .generation import LlmGenerator
from .handlers import HandlerRegistry, QueueCleanupHandler, QueueDispatcher
from .languages import MultilingualProvider
from .notify import ReviewNotifier
from .planner import Planner
from .publish import MarkdownPublisher
from .queue_store import QueueStore
from .scoring import HeuristicScorer
from .storage import init_db
from .utils import utc_now
from .worker import Worker


@dataclass
class Engine:
    conn: object
    config: Config
    store: QueueStore
    contexts: ContextRepository
    handlers: HandlerRegistry
    channels: ChannelRegistry
    dispatcher: QueueDispatcher
    distributor: ChannelDistributor
    planner: Planner
    worker: Worker

    def dispatch_cleanup(self) -> int | None:
        today = self.planner.today().isoformat()
        return self.dispatcher.dispatch(QueueCleanupHandler.job_type, {"date": today}, priority=1)

    def close(self) -> None:
        self.conn.close()


def build_engine(
    conn,
    config: Config,
    generator: Generator | None = None,
    scorer: Scorer | None = None,
    publisher: Publisher | None = None,
    notifier: Notifier | None = None,
    language_provider: MultilingualProvider | None = None,
    channels: ChannelRegistry | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Engine:
    worker_cfg = config.worker
    store = QueueStore(
        conn,
        clock=clock,
        retry_base_minutes=worker_cfg.retry_base_minutes,
        retry_max_minutes=worker_cfg.retry_max_minutes,
        max_attempts=worker_cfg.max_attempts,
    )
    contexts = ContextRepository(conn)

    handlers = HandlerRegistry()
    handlers.register_factory(
        QueueCleanupHandler.job_type,
        lambda: QueueCleanupHandler(
            store, config.retention.done_days, config.retention.failed_days
        ),
    )

    if channels is None:
        channels = ChannelRegistry()
        channels.register(WebhookChannel(config.channels.webhook))

    dispatcher = QueueDispatcher(store, handlers, clock=clock)
    distributor = ChannelDistributor(store, channels, clock=clock)
    planner = Planner(store, contexts, config, clock=clock, language_provider=language_provider)
    worker = Worker(
        store,
        contexts,
        config,
        handlers,
        channels,
        generator=generator or LlmGenerator(config.llm),
        scorer=scorer or HeuristicScorer(),
        publisher=publisher
        or MarkdownPublisher(
            config.paths.output_dir,
            base_url=config.publishing.base_url,
            section=config.publishing.section,
        ),
        notifier=notifier or ReviewNotifier(config.channels.notify_webhook_url),
        distributor=distributor,
        clock=clock,
    )
    return Engine(
        conn=conn,
        config=config,
        store=store,
        contexts=contexts,
        handlers=handlers,
        channels=channels,
        dispatcher=dispatcher,
        distributor=distributor,
        planner=planner,
        worker=worker,
    )


def open_engine(db_path: str | None = None, **overrides) -> Engine:
    conn = init_db(db_path)
    config = load_runtime_config(conn)
    return build_engine(conn, config, **overrides)
