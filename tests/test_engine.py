from __future__ import annotations

import time

from arc_sql_license.core.engine import EngineOptions, ExecutionEngine
from arc_sql_license.core.models import (
    ACTION_ALREADY_CONFIGURED,
    ACTION_CONVERTED,
    ACTION_DELETE_FAILED,
    ACTION_DELETED,
    ACTION_WHATIF,
    ACTION_WOULD_DELETE,
    ConfigSnapshot,
    DesiredConfiguration,
    Mode,
    RecordStatus,
)
from arc_sql_license.report import summarize
from conftest import FIXED_NOW, machine_id, sid, stub


class _InnerError(Exception):
    pass


def _engine(inventory, session, **options) -> ExecutionEngine:
    return ExecutionEngine(
        inventory,
        inventory,
        session,
        EngineOptions(**options),
        now=lambda: FIXED_NOW,
        sleep=lambda _s: None,
    )


def _orphan_fixture(inventory):
    inventory.add_server("rg-sql", "no-ref", licenseType="PAYG")
    inventory.add_server("rg-sql", "gone", licenseType="PAYG", containerResourceId=machine_id("rg-hosts", "gone"))
    inventory.add_server("rg-sql", "ok", licenseType="PAYG", containerResourceId=machine_id("rg-hosts", "ok"))
    inventory.add_host("rg-hosts", "ok")
    return [stub("rg-sql", "no-ref"), stub("rg-sql", "gone"), stub("rg-sql", "ok")]


# -- convert ---------------------------------------------------------------


def test_convert_paid_records_with_physical_core(inventory, session) -> None:
    inventory.add_server("rg-sql", "sql01", licenseType="Paid")
    inventory.add_server("rg-sql", "sql02", licenseType="Paid")
    records = [stub("rg-sql", "sql01", "host-1"), stub("rg-sql", "sql02", "host-2")]

    outcomes = _engine(inventory, session).run(
        records, Mode.CONVERT, False, desired=DesiredConfiguration(enable_physical_core_license=True)
    )

    expected = {
        "licenseType": "PAYG",
        "usePhysicalCoreLicense": {"isApplied": True, "lastUpdatedTimestamp": FIXED_NOW},
    }
    assert inventory.updates == [(sid("rg-sql", "sql01"), expected), (sid("rg-sql", "sql02"), expected)]
    assert [o.status for o in outcomes] == [RecordStatus.SUCCESS, RecordStatus.SUCCESS]
    assert all(o.action == ACTION_CONVERTED for o in outcomes)
    assert outcomes[0].machine == "host-1"
    assert outcomes[0].previous == ConfigSnapshot("Paid", None)
    assert outcomes[0].applied == ConfigSnapshot("PAYG", True)

    summary = summarize(outcomes)
    assert (summary.total, summary.succeeded, summary.failed, summary.skipped) == (2, 2, 0, 0)


def test_convert_dry_run_makes_no_writes(inventory, session) -> None:
    inventory.add_server("rg-sql", "sql01", licenseType="Paid")
    inventory.add_server("rg-sql", "sql02", licenseType="Paid")
    records = [stub("rg-sql", "sql01"), stub("rg-sql", "sql02")]

    outcomes = _engine(inventory, session).run(
        records, Mode.CONVERT, True, desired=DesiredConfiguration(enable_physical_core_license=True)
    )

    assert inventory.updates == []
    assert [o.action for o in outcomes] == [ACTION_WHATIF, ACTION_WHATIF]
    assert outcomes[0].changes == ("licenseType", "usePhysicalCoreLicense")
    assert outcomes[0].applied is None
    summary = summarize(outcomes)
    assert (summary.total, summary.skipped) == (2, 2)


def test_already_configured_is_skipped_without_write(inventory, session) -> None:
    inventory.add_server(
        "rg-sql", "sql01", licenseType="PAYG", usePhysicalCoreLicense={"isApplied": True, "lastUpdatedTimestamp": "t"}
    )

    (outcome,) = _engine(inventory, session).run(
        [stub("rg-sql", "sql01")], Mode.CONVERT, desired=DesiredConfiguration(enable_physical_core_license=True)
    )

    assert outcome.status is RecordStatus.SKIPPED
    assert outcome.action == ACTION_ALREADY_CONFIGURED
    assert outcome.error_message is None
    assert inventory.updates == []


def test_convert_preserves_unrelated_properties(inventory, session) -> None:
    rid = inventory.add_server(
        "rg-sql", "sql01", licenseType="Paid", edition="Enterprise", monitoring={"enabled": True}, cores=8
    )

    _engine(inventory, session).run([stub("rg-sql", "sql01")], Mode.CONVERT)

    assert inventory.servers[rid] == {
        "licenseType": "PAYG",
        "edition": "Enterprise",
        "monitoring": {"enabled": True},
        "cores": 8,
    }


def test_convert_writes_untouched_physical_core_entry_as_read(inventory, session) -> None:
    entry = {"isApplied": "false", "note": "set by policy"}
    rid = inventory.add_server("rg-sql", "sql01", licenseType="Paid", usePhysicalCoreLicense=entry)

    (outcome,) = _engine(inventory, session).run([stub("rg-sql", "sql01")], Mode.CONVERT)

    assert outcome.changes == ("licenseType",)
    assert inventory.servers[rid] == {"licenseType": "PAYG", "usePhysicalCoreLicense": entry}


def test_convert_is_idempotent_across_runs(inventory, session) -> None:
    inventory.add_server("rg-sql", "sql01", licenseType="Paid")
    desired = DesiredConfiguration(enable_physical_core_license=True)
    engine = _engine(inventory, session)

    first = engine.run([stub("rg-sql", "sql01")], Mode.CONVERT, desired=desired)
    second = engine.run([stub("rg-sql", "sql01")], Mode.CONVERT, desired=desired)

    assert first[0].status is RecordStatus.SUCCESS
    assert second[0].action == ACTION_ALREADY_CONFIGURED
    assert len(inventory.updates) == 1


def test_failures_are_isolated_per_record(inventory, session) -> None:
    inventory.add_server("rg-sql", "a", licenseType="Paid")
    rid_b = inventory.add_server("rg-sql", "b", licenseType="Paid")
    inventory.add_server("rg-sql", "d", licenseType="Paid")
    inner = _InnerError("RequestDisallowedByPolicy: tag required")
    outer = RuntimeError("(BadRequest) update rejected")
    outer.__cause__ = inner
    inventory.update_errors[rid_b] = outer
    records = [stub("rg-sql", "a"), stub("rg-sql", "b"), stub("rg-sql", "missing"), stub("rg-sql", "d")]

    outcomes = _engine(inventory, session).run(records, Mode.CONVERT)

    assert len(outcomes) == len(records)
    assert [o.name for o in outcomes] == ["a", "b", "missing", "d"]
    assert [o.status for o in outcomes] == [
        RecordStatus.SUCCESS,
        RecordStatus.FAILED,
        RecordStatus.FAILED,
        RecordStatus.SUCCESS,
    ]
    assert "update rejected" in outcomes[1].error_message
    assert "RequestDisallowedByPolicy" in outcomes[1].error_message
    assert outcomes[2].error_message.startswith("Server record not found")
    summary = summarize(outcomes)
    assert summary.succeeded + summary.failed + summary.skipped == summary.total == 4


def test_resolution_error_is_captured(inventory, session) -> None:
    rid = inventory.add_server("rg-sql", "sql01", licenseType="Paid")
    inventory.get_errors[rid] = PermissionError("AuthorizationFailed")

    (outcome,) = _engine(inventory, session).run([stub("rg-sql", "sql01")], Mode.CONVERT)

    assert outcome.status is RecordStatus.FAILED
    assert "AuthorizationFailed" in outcome.error_message
    assert outcome.resource_id == sid("rg-sql", "sql01")
    assert inventory.updates == []


def test_record_without_properties_fails_before_planning(inventory, session) -> None:
    inventory.get_server = lambda resource_id: stub("rg-sql", "sql01")

    (outcome,) = _engine(inventory, session).run([stub("rg-sql", "sql01")], Mode.CONVERT)

    assert outcome.status is RecordStatus.FAILED
    assert outcome.error_message.startswith("Server record not found:")
    assert "returned no properties" in outcome.error_message
    assert inventory.updates == []


def test_resolved_records_are_not_fetched_again(inventory, session) -> None:
    rid = inventory.add_server("rg-sql", "sql01", licenseType="Paid")
    record = inventory.record(rid)

    _engine(inventory, session).run([record], Mode.CONVERT, True)

    assert inventory.gets == []


def test_empty_input_yields_empty_outcomes(inventory, session) -> None:
    assert _engine(inventory, session).run([], Mode.CONVERT) == []
    assert summarize([]).total == 0


# -- reconcile -------------------------------------------------------------


def test_reconcile_classifies_each_record(inventory, session) -> None:
    records = _orphan_fixture(inventory)

    outcomes = _engine(inventory, session).run(records, Mode.RECONCILE)

    assert [o.status for o in outcomes] == [
        RecordStatus.ORPHANED_NO_REFERENCE,
        RecordStatus.ORPHANED_REFERENCE_NOT_FOUND,
        RecordStatus.VALID,
    ]
    assert all(o.action is None for o in outcomes)
    summary = summarize(outcomes)
    assert (summary.valid, summary.orphaned) == (1, 2)
    assert summary.valid + summary.orphaned + summary.error_checking + summary.failed == summary.total
    assert inventory.deletes == []


def test_reconcile_deletes_only_orphans(inventory, session) -> None:
    records = _orphan_fixture(inventory)

    outcomes = _engine(inventory, session).run(records, Mode.RECONCILE, False, delete_orphans=True)

    assert inventory.deletes == [sid("rg-sql", "no-ref"), sid("rg-sql", "gone")]
    assert [o.action for o in outcomes] == [ACTION_DELETED, ACTION_DELETED, None]
    assert summarize(outcomes).deleted == 2


def test_reconcile_delete_dry_run(inventory, session) -> None:
    records = _orphan_fixture(inventory)

    outcomes = _engine(inventory, session).run(records, Mode.RECONCILE, True, delete_orphans=True)

    assert inventory.deletes == []
    assert [o.action for o in outcomes] == [ACTION_WOULD_DELETE, ACTION_WOULD_DELETE, None]
    assert summarize(outcomes).would_delete == 2


def test_error_checking_is_never_deleted(inventory, session) -> None:
    inventory.add_server("rg-sql", "sql01", containerResourceId=machine_id("rg-hosts", "h1"))
    inventory.host_errors[("rg-hosts", "h1")] = PermissionError("AuthorizationFailed on machines/read")

    (outcome,) = _engine(inventory, session).run(
        [stub("rg-sql", "sql01")], Mode.RECONCILE, False, delete_orphans=True
    )

    assert outcome.status is RecordStatus.ERROR_CHECKING
    assert "AuthorizationFailed" in outcome.error_message
    assert outcome.action is None
    assert inventory.deletes == []
    assert summarize([outcome]).error_checking == 1


def test_delete_failure_is_captured(inventory, session) -> None:
    rid = inventory.add_server("rg-sql", "orphan")
    inventory.delete_errors[rid] = RuntimeError("ScopeLocked")

    (outcome,) = _engine(inventory, session).run([stub("rg-sql", "orphan")], Mode.RECONCILE, delete_orphans=True)

    assert outcome.status is RecordStatus.ORPHANED_NO_REFERENCE
    assert outcome.action == ACTION_DELETE_FAILED
    assert outcome.error_message == "ScopeLocked"
    assert summarize([outcome]).delete_failed == 1


# -- scheduling ------------------------------------------------------------


def test_worker_pool_keeps_input_order(inventory, session) -> None:
    names = [f"sql{i:02d}" for i in range(12)]
    for name in names:
        inventory.add_server("rg-sql", name, licenseType="Paid")
    original = inventory.get_server

    def slow_get(resource_id):
        # later records finish first
        time.sleep(0.001 * (12 - int(resource_id[-2:])))
        return original(resource_id)

    inventory.get_server = slow_get

    outcomes = _engine(inventory, session, workers=4).run([stub("rg-sql", n) for n in names], Mode.CONVERT, True)

    assert [o.name for o in outcomes] == names
    assert all(o.action == ACTION_WHATIF for o in outcomes)


def test_pacing_sleeps_before_each_record(inventory, session) -> None:
    for name in ("a", "b", "c"):
        inventory.add_server("rg-sql", name, licenseType="PAYG")
    sleeps = []
    engine = ExecutionEngine(
        inventory,
        inventory,
        session,
        EngineOptions(pace_seconds=0.5),
        now=lambda: FIXED_NOW,
        sleep=sleeps.append,
    )

    engine.run([stub("rg-sql", n) for n in ("a", "b", "c")], Mode.CONVERT)

    assert sleeps == [0.5, 0.5, 0.5]


def test_on_outcome_called_once_per_record(inventory, session) -> None:
    records = _orphan_fixture(inventory)
    received = []
    engine = ExecutionEngine(inventory, inventory, session, now=lambda: FIXED_NOW, on_outcome=received.append)

    outcomes = engine.run(records, Mode.RECONCILE)

    assert sorted(o.name for o in received) == sorted(o.name for o in outcomes)
