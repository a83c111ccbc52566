"""
Construction of the DeadCI component graph from one configuration value.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from deadci.config import DeadCIConfig
from deadci.core.executor import JobExecutor
from deadci.core.intake import IntakeService
from deadci.core.reporter import ReporterRegistry, build_registry
from deadci.core.store import EventStore
from deadci.core.worker_pool import WorkerPool
from deadci.db.database import init_db, make_engine

logger = logging.getLogger(__name__)


@dataclass
class CIServices:
    """Everything the HTTP layer and lifespan need."""
    config: DeadCIConfig
    engine: Engine
    store: EventStore
    executor: JobExecutor
    reporters: ReporterRegistry
    pool: WorkerPool
    intake: IntakeService


def build_services(config: DeadCIConfig) -> CIServices:
    """
    Create the database and wire store, executor, reporters, pool and intake.
    Builds left running by a previous process are failed first, so they can
    be re-run.
    """
    config.data_dir.mkdir(parents=True, exist_ok=True)
    engine = make_engine(config.db_url)
    init_db(engine)

    store = EventStore(engine)
    interrupted = store.fail_interrupted()
    if interrupted:
        logger.warning(f"interrupted_builds_failed count={interrupted}")

    executor = JobExecutor(config, store)
    reporters = build_registry(config, store)
    pool = WorkerPool(config, store, executor, reporters)
    intake = IntakeService(store, reporters, pool)
    return CIServices(
        config=config,
        engine=engine,
        store=store,
        executor=executor,
        reporters=reporters,
        pool=pool,
        intake=intake,
    )
