"""FastAPI surface for the driver scheduler.

Submission clients use the /v1/submissions endpoints; the offer-matching and
execution layer drives launches and terminations through the launch/terminate
endpoints and reads the queue from /v1/scheduler/queue.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from clusterdispatch.config.logging import apply_logging_config
from clusterdispatch.config.settings import RuntimeConfig, default_config_paths, load_runtime_config
from clusterdispatch.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    SchemaValidationError,
    StorageFailure,
    ValidationError,
)
from clusterdispatch.executor.engine import DriverRegistry
from clusterdispatch.models import DriverDescription
from clusterdispatch.scheduler.facade import SchedulerFacade
from clusterdispatch.scheduler.runner import RetryLoop
from clusterdispatch.storage.factory import open_persistence_engine
from clusterdispatch.storage.interfaces import PersistenceEngine
from clusterdispatch.utils import utcnow
from clusterdispatch.validation.schema_validator import SchemaValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppComponents:
    facade: SchedulerFacade
    schema_validator: SchemaValidator
    engine: PersistenceEngine
    retry_loop: RetryLoop | None = None


def _env_path(name: str) -> Path | None:
    v = os.environ.get(name)
    if not v:
        return None
    return Path(v)


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, SchemaValidationError):
        return {
            "error": "SCHEMA_VALIDATION_ERROR",
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, ValidationError):
        return {"error": "VALIDATION_ERROR", "message": str(err), "details": err.details}
    if isinstance(err, NotFoundError):
        return {"error": "NOT_FOUND", "resource_type": err.resource_type, "resource_id": err.resource_id, "message": str(err)}
    if isinstance(err, ConflictError):
        return {"error": "CONFLICT", "message": str(err), "details": err.details}
    if isinstance(err, StorageFailure):
        return {"error": "STORAGE_FAILURE", "message": str(err)}
    if isinstance(err, ConfigurationError):
        return {"error": "CONFIGURATION_ERROR", "message": str(err), "details": err.details}
    return {"error": "INTERNAL", "message": str(err)}


def build_components(runtime: RuntimeConfig) -> AppComponents:
    schema_validator = SchemaValidator.load_from_dir(runtime.validation.schemas_dir)
    engine = open_persistence_engine(runtime.storage)
    registry = DriverRegistry(engine=engine, config=runtime.scheduler, launch=runtime.launch)
    facade = SchedulerFacade(registry)
    facade.initialize()
    retry_loop = RetryLoop(config=runtime.scheduler, facade=facade)
    return AppComponents(facade=facade, schema_validator=schema_validator, engine=engine, retry_loop=retry_loop)


def _components_from_environment() -> AppComponents:
    default_runtime, default_logging = default_config_paths()
    runtime_cfg_path = _env_path("CLUSTER_DISPATCH_RUNTIME_CONFIG") or default_runtime
    logging_cfg_path = _env_path("CLUSTER_DISPATCH_LOGGING_CONFIG") or default_logging

    runtime = load_runtime_config(runtime_cfg_path)
    apply_logging_config(logging_cfg_path)
    return build_components(runtime)


def create_app(components: AppComponents | None = None) -> FastAPI:
    app = FastAPI(title="Cluster Dispatch", version="0.1.0")

    @app.on_event("startup")
    def _startup() -> None:
        # Fail closed at startup if config, schemas or the store cannot be loaded.
        app.state.components = components or _components_from_environment()
        if app.state.components.retry_loop is not None:
            app.state.components.retry_loop.start()
        logger.info("scheduler_started", extra={"event": "scheduler_started"})

    @app.on_event("shutdown")
    def _shutdown() -> None:
        comps: AppComponents = app.state.components
        if comps.retry_loop is not None:
            comps.retry_loop.stop(timeout=5)
        comps.engine.close()

    @app.exception_handler(ValidationError)
    def _validation_handler(_req, exc: ValidationError):
        return JSONResponse(status_code=422, content=_error_payload(exc))

    @app.exception_handler(NotFoundError)
    def _not_found_handler(_req, exc: NotFoundError):
        return JSONResponse(status_code=404, content=_error_payload(exc))

    @app.exception_handler(ConflictError)
    def _conflict_handler(_req, exc: ConflictError):
        return JSONResponse(status_code=409, content=_error_payload(exc))

    @app.exception_handler(StorageFailure)
    def _storage_handler(_req, exc: StorageFailure):
        logger.warning("storage_failure: %s", exc, extra={"event": "storage_failure"})
        return JSONResponse(status_code=503, content=_error_payload(exc))

    @app.exception_handler(ConfigurationError)
    def _configuration_handler(_req, exc: ConfigurationError):
        return JSONResponse(status_code=500, content=_error_payload(exc))

    @app.exception_handler(Exception)
    def _unhandled_handler(_req, exc: Exception):
        logger.exception("unhandled_error", extra={"event": "unhandled_error"})
        return JSONResponse(status_code=500, content=_error_payload(exc))

    def _components() -> AppComponents:
        return app.state.components

    @app.get("/health")
    def health() -> dict[str, Any]:
        """Returns 200 once the app is up; `readiness` tells whether requests are accepted."""
        return {"status": "ok", "readiness": _components().facade.readiness}

    @app.post("/v1/submissions/create")
    def create_submission(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        comps = _components()
        comps.schema_validator.validate("DriverDescription", payload)
        try:
            description = DriverDescription.from_document(payload, submission_date=utcnow())
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid driver description: {e}") from e
        return comps.facade.submit(description).to_document()

    @app.post("/v1/submissions/kill/{submission_id}")
    def kill_submission(submission_id: str) -> dict[str, Any]:
        return _components().facade.kill(submission_id).to_document()

    @app.get("/v1/submissions/status/{submission_id}")
    def submission_status(submission_id: str) -> dict[str, Any]:
        return _components().facade.driver_status(submission_id).to_document()

    @app.get("/v1/scheduler/state")
    def scheduler_state() -> dict[str, Any]:
        return _components().facade.status().to_document()

    @app.get("/v1/scheduler/queue")
    def scheduler_queue() -> dict[str, Any]:
        return {"queued": [d.to_document() for d in _components().facade.queued_drivers()]}

    @app.post("/v1/submissions/launch/{submission_id}")
    def launch_submission(submission_id: str, payload: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
        handle = (payload or {}).get("launch_handle")
        if handle is not None and not isinstance(handle, dict):
            raise ValidationError("launch_handle must be an object")
        command = _components().facade.on_offer_accepted(
            submission_id, {str(k): str(v) for k, v in handle.items()} if handle is not None else None
        )
        return {"launch": command.to_document()}

    @app.post("/v1/submissions/terminate/{submission_id}")
    def terminate_submission(submission_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        outcome = payload.get("outcome")
        if not isinstance(outcome, str):
            raise ValidationError("outcome is required")
        message = payload.get("message")
        driver = _components().facade.on_terminated(submission_id, outcome, str(message) if message is not None else None)
        return {"driver": driver.to_document()}

    return app


app = create_app()
