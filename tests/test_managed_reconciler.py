"""Unit tests for plugins/reconcilers/managed.py - the reconcile engine."""

import asyncio
from datetime import datetime

import pytest
from unittest.mock import AsyncMock, patch

from db import ResourceStatus
from errors import ExternalAPIError, NotFoundError
from events import EventReason, EventType
from managedresource import FINALIZER
from plugins.managed.base import ExternalObservation, ManagedKind
from plugins.managed.repositorypermission import (
    RepositoryPermissionKind,
    RepositoryPermissionParameters,
)
from plugins.reconcilers.base import BackoffPolicy, ReconcilerContext
from plugins.reconcilers.managed import ManagedReconciler


class StubKind(ManagedKind):
    """RepositoryPermission kind whose external client is supplied by the test."""

    kind = "RepositoryPermission"
    parameters_model = RepositoryPermissionParameters

    def __init__(self, external):
        self.external = external
        self.configs = []

    def new_external(self, cfg):
        self.configs.append(cfg)
        return self.external


def bind_on_create(name="configs"):
    async def create(record):
        record.external_name = name

    return create


def events(bus):
    return [
        (call.args[0].event_type, call.args[0].reason)
        for call in bus.publish.call_args_list
    ]


def conditions(call):
    return {c["type"]: c["reason"] for c in call.kwargs["conditions"]}


@pytest.fixture
def external():
    external = AsyncMock()
    external.observe.return_value = ExternalObservation(resource_exists=False)
    external.create.side_effect = bind_on_create()
    return external


@pytest.fixture
def event_bus():
    return AsyncMock()


@pytest.fixture
def ctx(mock_db, event_bus):
    return ReconcilerContext(
        db=mock_db,
        shutdown_event=asyncio.Event(),
        event_bus=event_bus,
        backoff=BackoffPolicy(base_delay=10, max_delay=100, jitter_factor=0.2),
    )


@pytest.fixture
def reconciler(external):
    return ManagedReconciler(StubKind(external), poll_interval=30)


class TestManagedReconcilerInfo:
    def test_name_and_kinds(self, reconciler):
        assert reconciler.name == "managed-repositorypermission"
        assert reconciler.kinds == ["RepositoryPermission"]


@pytest.mark.asyncio
class TestReconcileSync:
    """Tests for reconciling records that are not being deleted."""

    async def test_create_when_never_created(
        self, reconciler, ctx, mock_db, external, event_bus, sample_resource
    ):
        async def create(record):
            # Creating is persisted before the external call
            saved = mock_db.update_resource_conditions.call_args.args[1]
            assert saved[0]["reason"] == "Creating"
            record.external_name = "configs"

        external.create.side_effect = create

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is True
        assert result.requeue_after == 0
        external.create.assert_called_once()
        external.update.assert_not_called()

        status_call = mock_db.update_resource_status.call_args
        assert status_call.kwargs["status"] == ResourceStatus.PENDING
        assert status_call.kwargs["external_name"] == "configs"
        assert status_call.kwargs["requeue_after"] == 0
        assert status_call.kwargs["observed_generation"] == 1
        assert conditions(status_call) == {
            "Ready": "Creating",
            "Synced": "ReconcileSuccess",
        }

        assert events(event_bus) == [
            (EventType.NORMAL, EventReason.CREATED_EXTERNAL_RESOURCE)
        ]
        history = mock_db.record_reconciliation.call_args.kwargs
        assert history["operation"] == "create"
        assert history["success"] is True

    async def test_up_to_date_does_nothing(
        self, reconciler, ctx, mock_db, external, event_bus, sample_resource
    ):
        sample_resource["external_name"] = "configs"
        external.observe.return_value = ExternalObservation(
            resource_exists=True, resource_up_to_date=True
        )

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is True
        assert result.requeue_after == 30
        external.create.assert_not_called()
        external.update.assert_not_called()
        status_call = mock_db.update_resource_status.call_args
        assert status_call.kwargs["status"] == ResourceStatus.READY
        assert status_call.kwargs["requeue_after"] == 30
        assert events(event_bus) == []

    async def test_update_when_out_of_date(
        self, reconciler, ctx, mock_db, external, event_bus, sample_resource
    ):
        sample_resource["external_name"] = "configs"
        external.observe.return_value = ExternalObservation(
            resource_exists=True, resource_up_to_date=False
        )

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is True
        external.update.assert_called_once()
        assert events(event_bus) == [
            (EventType.NORMAL, EventReason.UPDATED_EXTERNAL_RESOURCE)
        ]
        assert mock_db.record_reconciliation.call_args.kwargs["operation"] == "update"

    async def test_recreate_when_absent_remotely(
        self, reconciler, ctx, external, event_bus, sample_resource
    ):
        sample_resource["external_name"] = "configs"

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is True
        external.create.assert_called_once()
        assert events(event_bus) == [
            (EventType.WARNING, EventReason.EXTERNAL_RESOURCE_MISSING),
            (EventType.NORMAL, EventReason.CREATED_EXTERNAL_RESOURCE),
        ]

    async def test_observe_error_is_not_absence(
        self, reconciler, ctx, mock_db, external, event_bus, sample_resource
    ):
        external.observe.side_effect = ExternalAPIError("unauthorized", status=401)

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is False
        assert "unauthorized" in result.message
        external.create.assert_not_called()
        mock_db.update_resource_status.assert_not_called()

        failure = mock_db.record_failure.call_args.kwargs
        assert failure["message"] == "unauthorized"
        assert failure["base_delay"] == 10
        assert failure["max_delay"] == 100
        assert failure["jitter_factor"] == 0.2
        synced = [c for c in failure["conditions"] if c["type"] == "Synced"][0]
        assert synced["status"] == "False"
        assert synced["reason"] == "ReconcileError"

        assert events(event_bus) == [(EventType.WARNING, EventReason.CANNOT_OBSERVE)]
        history = mock_db.record_reconciliation.call_args.kwargs
        assert history["operation"] == "observe"
        assert history["success"] is False
        assert history["error_message"] == "unauthorized"

    async def test_create_error(
        self, reconciler, ctx, mock_db, external, event_bus, sample_resource
    ):
        external.create.side_effect = ExternalAPIError("conflict", status=409)

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is False
        failure = mock_db.record_failure.call_args.kwargs
        assert failure["external_name"] is None
        assert events(event_bus) == [(EventType.WARNING, EventReason.CANNOT_CREATE)]

    async def test_wrong_kind(
        self, reconciler, ctx, mock_db, external, event_bus, sample_resource
    ):
        sample_resource["kind"] = "Repository"

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is False
        assert "not a RepositoryPermission resource" in result.message
        external.observe.assert_not_called()
        assert events(event_bus) == [(EventType.WARNING, EventReason.CANNOT_CONNECT)]

    async def test_missing_provider_config(
        self, reconciler, ctx, mock_db, external, sample_resource
    ):
        mock_db.get_provider_config.return_value = None

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is False
        assert "cannot get provider config" in result.message
        external.observe.assert_not_called()

    async def test_unreadable_stored_row_is_retried_with_backoff(
        self, reconciler, ctx, mock_db, external, event_bus, sample_resource
    ):
        sample_resource["conditions"] = [
            {"type": "Healthy", "status": "True", "reason": "Fine"}
        ]
        sample_resource["external_name"] = "configs"

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is False
        assert "cannot read stored resource" in result.message
        external.observe.assert_not_called()
        failure = mock_db.record_failure.call_args.kwargs
        assert failure["resource_id"] == 1
        assert failure["external_name"] == "configs"
        assert failure["base_delay"] == 10
        assert events(event_bus) == [(EventType.WARNING, EventReason.CANNOT_CONNECT)]
        mock_db.record_reconciliation.assert_called_once()

    async def test_unknown_deletion_policy_is_recorded(
        self, reconciler, ctx, mock_db, sample_resource
    ):
        sample_resource["deletion_policy"] = "Keep"

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is False
        mock_db.record_failure.assert_called_once()

    async def test_timeout(self, external, ctx, mock_db, sample_resource):
        async def hang(record):
            await asyncio.sleep(10)

        external.observe.side_effect = hang
        reconciler = ManagedReconciler(StubKind(external), reconcile_timeout=0.01)

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is False
        assert "timed out" in result.message
        mock_db.record_failure.assert_called_once()

    async def test_cancellation_propagates(
        self, reconciler, ctx, mock_db, external, sample_resource
    ):
        external.observe.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await reconciler.reconcile(sample_resource, ctx)
        mock_db.record_failure.assert_not_called()

    async def test_credentials_resolved_every_cycle(
        self, reconciler, ctx, mock_db, sample_resource
    ):
        await reconciler.reconcile(dict(sample_resource), ctx)
        await reconciler.reconcile(dict(sample_resource), ctx)

        assert mock_db.get_provider_config.call_count == 2
        assert len(reconciler.managed_kind.configs) == 2


@pytest.mark.asyncio
class TestReconcileDeletion:
    """Tests for finalizing deleted records."""

    @pytest.fixture
    def deleted_resource(self, sample_resource):
        sample_resource["deleted_at"] = datetime.now()
        sample_resource["status"] = "deleting"
        sample_resource["external_name"] = "configs"
        return sample_resource

    async def test_delete_existing(
        self, reconciler, ctx, mock_db, external, event_bus, deleted_resource
    ):
        external.observe.return_value = ExternalObservation(resource_exists=True)

        result = await reconciler.reconcile(deleted_resource, ctx)

        assert result.success is True
        external.delete.assert_called_once()
        mock_db.remove_finalizer.assert_called_once_with(1, FINALIZER)
        mock_db.hard_delete_resource.assert_called_once_with(1)
        mock_db.record_reconciliation.assert_not_called()
        assert events(event_bus) == [
            (EventType.NORMAL, EventReason.DELETED_EXTERNAL_RESOURCE)
        ]

    async def test_delete_already_absent(
        self, reconciler, ctx, mock_db, external, deleted_resource
    ):
        result = await reconciler.reconcile(deleted_resource, ctx)

        assert result.success is True
        external.delete.assert_not_called()
        mock_db.hard_delete_resource.assert_called_once_with(1)

    async def test_orphan_leaves_external_object(
        self, reconciler, ctx, mock_db, external, deleted_resource
    ):
        deleted_resource["deletion_policy"] = "Orphan"

        result = await reconciler.reconcile(deleted_resource, ctx)

        assert result.success is True
        external.observe.assert_not_called()
        external.delete.assert_not_called()
        mock_db.hard_delete_resource.assert_called_once_with(1)

    async def test_waits_on_other_finalizers(
        self, reconciler, ctx, mock_db, external, deleted_resource
    ):
        mock_db.get_finalizers.return_value = ["example.com/cleanup"]

        result = await reconciler.reconcile(deleted_resource, ctx)

        assert result.success is True
        mock_db.hard_delete_resource.assert_not_called()
        status_call = mock_db.update_resource_status.call_args
        assert status_call.kwargs["status"] == ResourceStatus.DELETING
        assert conditions(status_call)["Ready"] == "Deleting"
        mock_db.record_reconciliation.assert_called_once()

    async def test_delete_failure_keeps_finalizer(
        self, reconciler, ctx, mock_db, external, event_bus, deleted_resource
    ):
        external.observe.return_value = ExternalObservation(resource_exists=True)
        external.delete.side_effect = ExternalAPIError("boom", status=500)

        result = await reconciler.reconcile(deleted_resource, ctx)

        assert result.success is False
        mock_db.remove_finalizer.assert_not_called()
        mock_db.hard_delete_resource.assert_not_called()
        mock_db.record_failure.assert_called_once()
        assert events(event_bus) == [(EventType.WARNING, EventReason.CANNOT_DELETE)]


@pytest.mark.asyncio
class TestRepositoryPermissionLifecycle:
    """Engine cycles against the real kind with a mocked permission API."""

    @pytest.fixture
    def api(self):
        return AsyncMock()

    @pytest.fixture
    def reconciler(self, api):
        with patch(
            "plugins.managed.repositorypermission.RepositoryPermissionClient",
            return_value=api,
        ):
            yield ManagedReconciler(RepositoryPermissionKind())

    async def test_first_cycle_creates_and_binds(
        self, reconciler, ctx, mock_db, api, sample_resource
    ):
        api.get.side_effect = NotFoundError()

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is True
        api.create.assert_called_once()
        status_call = mock_db.update_resource_status.call_args
        assert status_call.kwargs["external_name"] == "configs"

    async def test_deletion_with_remote_not_found(
        self, reconciler, ctx, mock_db, api, sample_resource
    ):
        sample_resource["deleted_at"] = datetime.now()
        sample_resource["external_name"] = "configs"
        api.delete.side_effect = NotFoundError()

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is True
        api.delete.assert_called_once()
        mock_db.hard_delete_resource.assert_called_once_with(1)

    async def test_permission_change_triggers_no_update(
        self, reconciler, ctx, mock_db, api, sample_resource
    ):
        sample_resource["external_name"] = "configs"
        sample_resource["spec"]["permission"] = "admin"
        sample_resource["generation"] = 2

        result = await reconciler.reconcile(sample_resource, ctx)

        assert result.success is True
        api.create.assert_not_called()
        assert mock_db.update_resource_status.call_args.kwargs["status"] == (
            ResourceStatus.READY
        )


@pytest.mark.asyncio
class TestPolling:
    """Tests for the polling loop."""

    async def test_poll_skips_in_flight_records(
        self, reconciler, ctx, mock_db, external, sample_resource
    ):
        gate = asyncio.Event()

        async def observe(record):
            await gate.wait()
            return ExternalObservation(resource_exists=True, resource_up_to_date=True)

        external.observe.side_effect = observe
        mock_db.get_resources_needing_reconciliation_by_kind.return_value = [
            sample_resource
        ]

        first = await reconciler.poll(ctx)
        second = await reconciler.poll(ctx)

        assert len(first) == 1
        assert second == []
        assert reconciler.in_flight() == {1}

        gate.set()
        await asyncio.gather(*first)
        assert reconciler.in_flight() == set()
        assert external.observe.call_count == 1

    async def test_poll_fetches_twice_max_concurrent(self, external, ctx, mock_db):
        reconciler = ManagedReconciler(StubKind(external), max_concurrent_reconciles=3)
        mock_db.get_resources_needing_reconciliation_by_kind.return_value = []

        assert await reconciler.poll(ctx) == []
        mock_db.get_resources_needing_reconciliation_by_kind.assert_called_once_with(
            kinds=["RepositoryPermission"], limit=6
        )

    async def test_start_returns_on_shutdown(self, reconciler, ctx, mock_db):
        async def fetch(kinds, limit):
            ctx.shutdown_event.set()
            return []

        mock_db.get_resources_needing_reconciliation_by_kind.side_effect = fetch

        await asyncio.wait_for(reconciler.start(ctx), timeout=1)
        mock_db.get_resources_needing_reconciliation_by_kind.assert_called_once()

    async def test_start_survives_poll_errors(self, reconciler, ctx, mock_db):
        calls = []

        async def fetch(kinds, limit):
            calls.append(kinds)
            if len(calls) == 1:
                raise RuntimeError("db down")
            ctx.shutdown_event.set()
            return []

        mock_db.get_resources_needing_reconciliation_by_kind.side_effect = fetch
        reconciler.poll_interval = 0

        await asyncio.wait_for(reconciler.start(ctx), timeout=1)
        assert len(calls) == 2

    async def test_stop_cancels_running_reconciles(
        self, reconciler, ctx, mock_db, external, sample_resource
    ):
        async def observe(record):
            await asyncio.sleep(10)

        external.observe.side_effect = observe
        mock_db.get_resources_needing_reconciliation_by_kind.return_value = [
            sample_resource
        ]

        tasks = await reconciler.poll(ctx)
        await asyncio.sleep(0)
        await reconciler.stop()

        assert all(task.done() for task in tasks)
        assert reconciler.in_flight() == set()
