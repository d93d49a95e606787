from __future__ import annotations

from functools import wraps
from typing import Type

from pydantic import BaseModel, ValidationError

from loam.database.database import sessionmanager
from loam.main.config import get_settings
from loam.main.exceptions import InvalidJobError
from loam.main.logging import get_logger
from loam.redis.connection import build_arq_redis_settings
from loam.worker.services import BackgroundServices

logger = get_logger(__name__)


class Worker:
    """
    Collects arq functions and owns the worker process lifecycle.

    Attributes:
        functions (list): Registered job functions.
        redis_settings (RedisSettings): Redis settings for the job queue.
        on_startup (callable): Builds and starts the background services.
        on_shutdown (callable): Stops the background services.
        retry_jobs (bool): Flag to indicate if jobs should be retried.
        job_timeout (int): Timeout for jobs in seconds.
        max_jobs (int): Maximum number of concurrent jobs.

    Methods:
        startup(ctx):
            Connects the database and starts coordinators, gates and caches.

        shutdown(ctx):
            Stops coordinators (bounded wait) and releases connections.

        function(params_model):
            Decorator to register a job whose payload is validated into ``params_model``.

        include_subworker(sub_worker: Worker):
            Includes functions from a sub-worker.
    """

    def __init__(self):
        settings = get_settings()
        self.functions = []
        self.redis_settings = build_arq_redis_settings(settings)
        self.on_startup = self.startup
        self.on_shutdown = self.shutdown
        self.retry_jobs = False
        self.job_timeout = settings.worker_job_timeout_seconds
        self.max_jobs = settings.worker_max_jobs
        self.health_check_interval = 60  # seconds (default is 3600)

    async def startup(self, ctx):
        settings = get_settings()
        sessionmanager.init(settings.database_url)

        services = BackgroundServices.create(settings)
        await services.start()
        ctx["services"] = services

    async def shutdown(self, ctx):
        services: BackgroundServices | None = ctx.get("services")
        if services is not None:
            logger.info("Stopping background services")
            await services.stop()

        await sessionmanager.close()

    def function(self, params_model: Type[BaseModel]):
        def decorator(func):
            @wraps(func)
            async def wrapper(*args):
                ctx, raw_params = args[0], args[1]
                job_id = ctx.get("job_id", "")
                logger.debug(f"Executing {func.__name__} with params {raw_params}")

                try:
                    params = params_model.model_validate(raw_params)
                except ValidationError as exc:
                    # A malformed payload will never succeed, so fail it for good
                    raise InvalidJobError(job_id, f"invalid job data: {exc.errors()[0]['msg']}") from exc

                return await func(job_id, params, services=ctx["services"])

            self.functions.append(wrapper)
            return wrapper

        return decorator

    def include_subworker(self, sub_worker: Worker):
        self.functions.extend(sub_worker.functions)

        logger.debug(
            "Including functions from subworker: %s",
            [func.__name__ for func in sub_worker.functions],
        )
