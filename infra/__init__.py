# Infrastructure module - Logging, Configuration, Credentials, Database, Health
# SQLite for durable state, Rich for console logging

from .logging import (
    get_logger, configure_logging, RunContext, ExecutionTracer,
    log_run_end, get_run_id, generate_run_id
)
from .config import ConfigManager, RuntimeConfig
from .credentials import CredentialResolver, EnvCredentialResolver, StaticCredentialResolver
from .redaction import RedactionPolicy, sanitize_log_data
from .database import (
    DatabaseManager, ExecutionRun, WorkflowStep, LifecycleRecord, ToolVersion,
    RunStatus, StepStatus, DatabaseError, SchemaMismatchError, MigrationFailedError,
    SCHEMA_VERSION
)
from .health import IntegrationHealthChecker, IntegrationHealth, HealthStatus

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "RunContext",
    "ExecutionTracer",
    "log_run_end",
    "get_run_id",
    "generate_run_id",
    # Configuration
    "ConfigManager",
    "RuntimeConfig",
    # Credentials
    "CredentialResolver",
    "EnvCredentialResolver",
    "StaticCredentialResolver",
    # Redaction
    "RedactionPolicy",
    "sanitize_log_data",
    # Database
    "DatabaseManager",
    "ExecutionRun",
    "WorkflowStep",
    "LifecycleRecord",
    "ToolVersion",
    "RunStatus",
    "StepStatus",
    "DatabaseError",
    "SchemaMismatchError",
    "MigrationFailedError",
    "SCHEMA_VERSION",
    # Health
    "IntegrationHealthChecker",
    "IntegrationHealth",
    "HealthStatus",
]
