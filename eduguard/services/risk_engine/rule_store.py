"""Rule configuration store.

Holds one RiskRuleConfig per school, created lazily with defaults on
first access. Updates are validated as a whole before anything is
written, so a rejected update leaves the stored config untouched.
"""
import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from eduguard.shared.database import BaseRepository, ConnectionManager, RepositoryError
from .config import RiskRuleConfig, apply_update
from .exceptions import InvalidConfigError

logger = logging.getLogger(__name__)


class RuleConfigStore(BaseRepository[RiskRuleConfig]):
    """Per-school rule configurations.

    PostgreSQL table ``risk_rule_configs``:
        school_id TEXT PRIMARY KEY, config JSONB, updated_at TIMESTAMP
    """

    id_column = "school_id"

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(connection_manager, "risk_rule_configs")
        self._configs: Dict[str, RiskRuleConfig] = {}
        self._lock = threading.Lock()

    def _row_to_entity(self, row: tuple) -> RiskRuleConfig:
        payload = row[1]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return RiskRuleConfig.from_dict(payload)

    def get_or_create(self, school_id: str) -> RiskRuleConfig:
        """Return the school's config, creating it with defaults if absent."""
        if self.uses_database:
            return self._get_or_create_postgres(school_id)

        with self._lock:
            config = self._configs.get(school_id)
            if config is None:
                config = RiskRuleConfig(school_id=school_id)
                self._configs[school_id] = config
                logger.info("RULE_CONFIG_CREATED", extra={"school_id": school_id})
            return config

    def update(self, school_id: str, partial: Mapping[str, Any]) -> RiskRuleConfig:
        """Validate and apply a partial update.

        Raises:
            InvalidConfigError: Listing offending fields; stored config unchanged
        """
        if self.uses_database:
            return self._update_postgres(school_id, partial)

        with self._lock:
            current = self._configs.get(school_id) or RiskRuleConfig(school_id=school_id)
            updated = self._validated(current, partial)
            self._configs[school_id] = updated

        self._log_updated(school_id, partial)
        return updated

    def _validated(self, current: RiskRuleConfig, partial: Mapping[str, Any]) -> RiskRuleConfig:
        try:
            return apply_update(current, partial, now=datetime.utcnow())
        except InvalidConfigError as e:
            logger.warning(
                "RULE_CONFIG_UPDATE_REJECTED",
                extra={"school_id": current.school_id, "fields": e.fields}
            )
            raise

    def _log_updated(self, school_id: str, partial: Mapping[str, Any]) -> None:
        logger.info(
            "RULE_CONFIG_UPDATED",
            extra={"school_id": school_id, "blocks": sorted(partial.keys())}
        )

    def _get_or_create_postgres(self, school_id: str) -> RiskRuleConfig:
        default = RiskRuleConfig(school_id=school_id)
        inserted = self._execute(
            f"""
            INSERT INTO {self.table_name} (school_id, config, updated_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (school_id) DO NOTHING
            """,
            (school_id, json.dumps(default.to_dict()), default.updated_at),
        )
        if inserted:
            logger.info("RULE_CONFIG_CREATED", extra={"school_id": school_id})

        config = self.find_by_id(school_id)
        if config is None:
            raise RepositoryError(f"Rule config for school {school_id} vanished after insert")
        return config

    def _update_postgres(self, school_id: str, partial: Mapping[str, Any]) -> RiskRuleConfig:
        # Optimistic write keyed on updated_at; one re-read if an admin raced us
        for _ in range(2):
            current = self._get_or_create_postgres(school_id)
            updated = self._validated(current, partial)
            written = self._execute(
                f"""
                UPDATE {self.table_name}
                SET config = %s, updated_at = %s
                WHERE school_id = %s AND updated_at = %s
                """,
                (
                    json.dumps(updated.to_dict()),
                    updated.updated_at,
                    school_id,
                    current.updated_at,
                ),
            )
            if written:
                self._log_updated(school_id, partial)
                return updated

            logger.warning("RULE_CONFIG_UPDATE_RACED", extra={"school_id": school_id})

        raise RepositoryError(f"Rule config for school {school_id} is being updated concurrently")
