from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence

from ..auth.providers import SessionContext
from ..logging import get_logger
from ..util.concurrency import parallel_map_ordered
from ..util.errors import error_detail
from ..util.time import utc_now_iso
from .classifier import classify, lookup_host
from .interfaces import HostLookup, Inventory
from .models import (
    ACTION_ALREADY_CONFIGURED,
    ACTION_CONVERTED,
    ACTION_DELETE_FAILED,
    ACTION_DELETED,
    ACTION_WHATIF,
    ACTION_WOULD_DELETE,
    DesiredConfiguration,
    Mode,
    ProcessingOutcome,
    RecordNotFoundError,
    RecordStatus,
    ServerLicenseRecord,
    server_resource_id,
)
from .planner import plan

LOG = get_logger(__name__)

OutcomeCallback = Callable[[ProcessingOutcome], None]


@dataclass(frozen=True)
class EngineOptions:
    # 1 keeps processing strictly sequential
    workers: int = 1
    # delay before each record's external calls, independent of workers
    pace_seconds: float = 0.0


class ExecutionEngine:
    """
    Drives one pass over server records and returns exactly one outcome per record,
    in input order. One record's failure never aborts the run; no retries are made.
    """

    def __init__(
        self,
        inventory: Inventory,
        host_lookup: HostLookup,
        session: SessionContext,
        options: Optional[EngineOptions] = None,
        *,
        now: Callable[[], str] = utc_now_iso,
        sleep: Callable[[float], None] = time.sleep,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> None:
        self.inventory = inventory
        self.host_lookup = host_lookup
        self.session = session
        self.options = options or EngineOptions()
        self._now = now
        self._sleep = sleep
        self._on_outcome = on_outcome

    def run(
        self,
        records: Sequence[ServerLicenseRecord],
        mode: Mode,
        dry_run: bool = False,
        *,
        desired: Optional[DesiredConfiguration] = None,
        delete_orphans: bool = False,
    ) -> List[ProcessingOutcome]:
        desired = desired or DesiredConfiguration()

        def _one(record: ServerLicenseRecord) -> ProcessingOutcome:
            outcome = self._process(record, mode, dry_run, desired, delete_orphans)
            if self._on_outcome is not None:
                self._on_outcome(outcome)
            return outcome

        return parallel_map_ordered(_one, records, max_workers=max(1, self.options.workers))

    # ------------------------------------------------------------------

    def _process(
        self,
        record: ServerLicenseRecord,
        mode: Mode,
        dry_run: bool,
        desired: DesiredConfiguration,
        delete_orphans: bool,
    ) -> ProcessingOutcome:
        if self.options.pace_seconds > 0:
            self._sleep(self.options.pace_seconds)
        if not record.resource_id:
            record = replace(
                record,
                resource_id=server_resource_id(self.session.subscription_id, record.resource_group, record.name),
            )
        try:
            current = self._resolve(record)
        except Exception as e:
            message = error_detail(e)
            if isinstance(e, RecordNotFoundError):
                message = f"Server record not found: {message}"
            LOG.warning(
                "Could not resolve server record",
                extra={"step": "resolve", "phase": "error", "server": record.name, "error": message},
            )
            return self._outcome(record, mode, RecordStatus.FAILED, error_message=message)
        try:
            if mode is Mode.CONVERT:
                return self._convert(current, desired, dry_run)
            return self._reconcile(current, dry_run, delete_orphans)
        except Exception as e:
            LOG.error(
                "Unexpected error while processing record",
                exc_info=True,
                extra={"step": "record", "phase": "error", "server": record.name},
            )
            return self._outcome(current, mode, RecordStatus.FAILED, error_message=error_detail(e))

    def _resolve(self, record: ServerLicenseRecord) -> ServerLicenseRecord:
        if record.is_resolved:
            return record
        resolved = self.inventory.get_server(record.resource_id)
        if resolved.configuration is None:
            raise RecordNotFoundError(f"{record.resource_id} returned no properties")
        updates = {}
        if not resolved.resource_id:
            updates["resource_id"] = record.resource_id
        if record.machine and not resolved.machine:
            updates["machine"] = record.machine
        return replace(resolved, **updates) if updates else resolved

    def _convert(
        self,
        record: ServerLicenseRecord,
        desired: DesiredConfiguration,
        dry_run: bool,
    ) -> ProcessingOutcome:
        # _resolve guarantees a configuration
        config = record.configuration
        previous = config.snapshot()
        target = desired.snapshot()
        mutation = plan(config, desired, now=self._now)

        if mutation.patch is None:
            LOG.info(
                "Already configured",
                extra={"step": "convert", "phase": "skipped", "server": record.name},
            )
            return self._outcome(
                record,
                Mode.CONVERT,
                RecordStatus.SKIPPED,
                previous=previous,
                target=target,
                action=ACTION_ALREADY_CONFIGURED,
            )

        patch = mutation.patch
        if dry_run:
            LOG.info(
                "WhatIf: would update %s",
                ", ".join(patch.changes),
                extra={"step": "convert", "phase": "skipped", "server": record.name},
            )
            return self._outcome(
                record,
                Mode.CONVERT,
                RecordStatus.SKIPPED,
                previous=previous,
                target=target,
                action=ACTION_WHATIF,
                changes=patch.changes,
            )

        try:
            self.inventory.update_server_properties(record.resource_id, patch.properties)
        except Exception as e:
            message = error_detail(e)
            LOG.warning(
                "License update failed",
                extra={"step": "convert", "phase": "error", "server": record.name, "error": message},
            )
            return self._outcome(
                record,
                Mode.CONVERT,
                RecordStatus.FAILED,
                previous=previous,
                target=target,
                changes=patch.changes,
                error_message=message,
            )

        LOG.info(
            "Updated %s",
            ", ".join(patch.changes),
            extra={"step": "convert", "phase": "complete", "server": record.name},
        )
        return self._outcome(
            record,
            Mode.CONVERT,
            RecordStatus.SUCCESS,
            previous=previous,
            target=target,
            applied=patch.configuration.snapshot(),
            action=ACTION_CONVERTED,
            changes=patch.changes,
        )

    def _reconcile(self, record: ServerLicenseRecord, dry_run: bool, delete_orphans: bool) -> ProcessingOutcome:
        previous = record.configuration.snapshot() if record.configuration else None
        lookup = lookup_host(record, self.host_lookup)
        status = classify(record, lookup)
        error = lookup.error if lookup is not None else None

        level = logging.WARNING if status is RecordStatus.ERROR_CHECKING else logging.INFO
        LOG.log(level, status.value, extra={"step": "reconcile", "phase": "classified", "server": record.name})

        if not status.is_orphaned or not delete_orphans:
            return self._outcome(record, Mode.RECONCILE, status, previous=previous, error_message=error)

        if dry_run:
            return self._outcome(record, Mode.RECONCILE, status, previous=previous, action=ACTION_WOULD_DELETE)

        try:
            self.inventory.delete_server(record.resource_id)
        except Exception as e:
            message = error_detail(e)
            LOG.warning(
                "Orphan deletion failed",
                extra={"step": "delete", "phase": "error", "server": record.name, "error": message},
            )
            return self._outcome(
                record,
                Mode.RECONCILE,
                status,
                previous=previous,
                action=ACTION_DELETE_FAILED,
                error_message=message,
            )
        LOG.info("Deleted orphaned record", extra={"step": "delete", "phase": "complete", "server": record.name})
        return self._outcome(record, Mode.RECONCILE, status, previous=previous, action=ACTION_DELETED)

    def _outcome(
        self,
        record: ServerLicenseRecord,
        mode: Mode,
        status: RecordStatus,
        **fields,
    ) -> ProcessingOutcome:
        if not fields.get("error_message"):
            fields["error_message"] = None
        return ProcessingOutcome(
            name=record.name,
            resource_group=record.resource_group,
            machine=record.host_name,
            resource_id=record.resource_id,
            mode=mode,
            status=status,
            timestamp=self._now(),
            **fields,
        )
