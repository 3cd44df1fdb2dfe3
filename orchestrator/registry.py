from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from loguru import logger

from orchestrator.hooks import HOOKS
from orchestrator.interfaces import RecordStore
from orchestrator.mediator import RequestMediator
from orchestrator.settings import Settings
from security.audit.emitter import AuditEmitter
from security.audit.retry_queue import AuditRetryQueue, RetryPolicy
from security.audit.sinks import AuditSink, InMemoryAuditSink, JsonlAuditSink
from security.errors import ConfigurationError
from security.policy.engine import PolicyEngine
from security.policy.loader import build_policy
from security.policy.rbac import PolicyModel


class Registry:
    """
    Wires the policy engine, audit emitter, record store and mediator from
    Settings. Components are built on first use and cached.
    """

    def __init__(self, settings: Optional[Settings] = None, config_path: Optional[Union[str, Path]] = None):
        self.settings = settings or Settings()
        self.config_path = Path(config_path or self.settings.policy_config_path)
        self.components: Dict[str, Any] = {}
        self.logger = logger
        self.config: Dict[str, Any] = self._load_config()
        self.model: PolicyModel = build_policy(self.config, hooks=HOOKS)

    def _load_config(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r') as f:
                return yaml.safe_load(f)
        except FileNotFoundError:
            self.logger.error(f'Policy file not found: {self.config_path}')
            raise ConfigurationError([f"policy file not found: {self.config_path}"])
        except yaml.YAMLError as e:
            raise ConfigurationError([f"{self.config_path} is not valid YAML: {e}"])

    def register(self, name: str, component: Any) -> None:
        """Install a component by hand (tests, embedding applications)."""
        self.components[name] = component

    def get(self, name: str) -> Any:
        """Get a component instance, creating it if needed."""
        if name in self.components:
            return self.components[name]

        factory = getattr(self, f"_create_{name}", None)
        if factory is None:
            raise ValueError(f"Component '{name}' not found in registry")
        component = factory()
        self.components[name] = component
        return component

    @property
    def mediator(self) -> RequestMediator:
        return self.get("mediator")

    def list_components(self) -> Dict[str, str]:
        return {name: str(type(comp)) for name, comp in self.components.items()}

    def reload_config(self, config_path: Optional[Union[str, Path]] = None) -> PolicyModel:
        """
        Reload the policy document and swap it into the running mediator.

        On ConfigurationError the previous policy stays in force.
        """
        previous = (self.config_path, self.config)
        if config_path:
            self.config_path = Path(config_path)
        try:
            self.config = self._load_config()
            model = build_policy(self.config, hooks=HOOKS)
        except ConfigurationError as e:
            self.config_path, self.config = previous
            self.logger.error(f"Policy reload rejected, keeping current policy: {e}")
            raise

        self.model = model
        if "mediator" in self.components:
            self.components["mediator"].swap_engine(PolicyEngine(model))
        self.logger.info(f"Policy reloaded from {self.config_path}")
        return model

    # ==================== FACTORIES ====================

    def _create_engine(self) -> PolicyEngine:
        return PolicyEngine(self.model)

    def _create_database(self):
        from storage.relational.database import DatabaseConfig, DatabaseManager

        db = DatabaseManager(DatabaseConfig(self.settings.records_database_url))
        db.create_tables()
        return db

    def _create_audit_database(self):
        from storage.relational.database import DatabaseConfig, DatabaseManager

        url = self.settings.audit_database_url or self.settings.records_database_url
        if url == self.settings.records_database_url:
            return self.get("database")
        db = DatabaseManager(DatabaseConfig(url))
        db.create_tables()
        return db

    def _create_sink(self) -> AuditSink:
        kind = self.settings.audit_sink
        if kind == "memory":
            self.logger.warning("Using in-memory audit sink; events are lost on exit")
            return InMemoryAuditSink()
        if kind == "jsonl":
            return JsonlAuditSink(self.settings.audit_log_path)

        from storage.relational.repository import DatabaseAuditSink

        return DatabaseAuditSink(self.get("audit_database"))

    def _create_emitter(self) -> AuditEmitter:
        queue_path = self.settings.audit_retry_queue_path
        emitter = AuditEmitter(
            sink=self.get("sink"),
            classifications=self.model.classifications,
            retry_policy=RetryPolicy(self.settings.audit_max_attempts, self.settings.audit_retry_base_delay),
            retry_queue=AuditRetryQueue(queue_path) if queue_path else None,
            audit_personal_reads=self.settings.audit_personal_reads,
        )
        redelivered = emitter.redeliver()
        if redelivered:
            self.logger.info(f"Redelivered {redelivered} queued audit events")
        return emitter

    def _create_store(self) -> RecordStore:
        if self.settings.records_database_url:
            from storage.relational.repository import SqlRecordStore

            return SqlRecordStore(self.get("database"))

        from storage.memory_store import InMemoryRecordStore

        self.logger.warning("RECORDS_DATABASE_URL not set; using in-memory record store")
        return InMemoryRecordStore()

    def _create_mediator(self) -> RequestMediator:
        return RequestMediator(
            engine=self.get("engine"),
            emitter=self.get("emitter"),
            store=self.get("store"),
            timeout=self.settings.request_timeout_s,
        )
