"""
Integration tests for InventoryClient against the reference server.

Tests cover:
- Accepted writes and version advancement
- Two devices editing the same product (conflict, resolution)
- Offline editing, queueing and sync on reconnect
- Idempotent replay of retried writes and sales
- Atomic deduction and checkout
- Location-scoped fallback
- Degraded mode when the server is down
"""

import asyncio

import httpx
import pytest

from sdk.possync_sdk import (
    ApiConfig,
    BreakerConfig,
    ClientConfig,
    ConflictError,
    ConflictStrategy,
    DeductionStatus,
    InventoryClient,
    MutationStatus,
    QueueConfig,
    RetryConfig,
    StockLine,
    UpdateStatus,
    VersionedEntity,
    new_idempotency_key,
)

LOCATION = "store-1"


def client_config(**overrides):
    """Client configuration with fast, deterministic retries and a memory queue."""
    values = dict(
        api=ApiConfig(base_url="http://testserver", location_id=LOCATION),
        retry=RetryConfig(max_retries=0, initial_backoff_ms=1, max_backoff_ms=1, jitter_ms=0),
        queue=QueueConfig(db_path=":memory:"),
    )
    values.update(overrides)
    return ClientConfig(**values)


@pytest.fixture
async def make_client(app):
    """Factory for device clients sharing the same server."""
    clients = []

    async def factory(**overrides):
        client = InventoryClient(
            client_config(**overrides),
            transport=httpx.ASGITransport(app=app),
        )
        await client.connect()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.close()


@pytest.fixture
async def device(make_client):
    """A connected device client."""
    return await make_client()


@pytest.fixture
async def other_device(make_client):
    """A second device at the same location."""
    return await make_client()


@pytest.fixture
async def products(server_store):
    """Seed products at the device's location."""
    await server_store.create_product(
        {"name": "Tee", "price": 10.0, "quantity": 5}, product_id="p1", location_id=LOCATION
    )
    await server_store.create_product(
        {"name": "Hoodie", "quantity": 3, "variants": {"S": 2, "M": 1}},
        product_id="p2",
        location_id=LOCATION,
    )


def set_quantity(quantity):
    return lambda fields: {**fields, "quantity": quantity}


class SlowTransport(httpx.AsyncBaseTransport):
    """Delays every request so concurrent calls overlap in flight."""

    def __init__(self, inner, delay=0.05):
        self.inner = inner
        self.delay = delay

    async def handle_async_request(self, request):
        await asyncio.sleep(self.delay)
        return await self.inner.handle_async_request(request)

    async def aclose(self):
        await self.inner.aclose()


class TestVersionedWrites:
    """Direct writes while online."""

    @pytest.mark.asyncio
    async def test_update_advances_version(self, device, server_store, products):
        """An accepted write lands at base_version + 1."""
        result = await device.update("p1", lambda f: {**f, "price": 12.5})

        assert result.status == UpdateStatus.ACCEPTED
        assert result.entity.version == 2
        stored = await server_store.get_product("p1")
        assert stored["price"] == 12.5
        assert stored["version"] == 2
        assert device.cache.get("p1").version == 2

    @pytest.mark.asyncio
    async def test_two_devices_conflict(self, device, other_device, server_store, products):
        """The second writer on a stale version gets a conflict, not an overwrite."""
        await device.get("p1")
        await other_device.get("p1")
        conflicts = []
        other_device.on_conflict(conflicts.append)

        first = await device.update("p1", set_quantity(4))
        second = await other_device.update("p1", set_quantity(1))

        assert first.accepted
        assert second.status == UpdateStatus.CONFLICTED
        assert second.server_state.version == 2
        assert second.server_state.fields["quantity"] == 4
        assert len(conflicts) == 1
        assert other_device.cache.get("p1").fields["quantity"] == 1
        assert (await server_store.get_product("p1"))["quantity"] == 4

    @pytest.mark.asyncio
    async def test_concurrent_edits_to_one_product_apply_in_order(self, app, server_store, products):
        """A second edit waits for the first instead of racing it on the same version."""
        client = InventoryClient(
            client_config(), transport=SlowTransport(httpx.ASGITransport(app=app))
        )
        await client.connect()
        try:
            await client.get("p1")
            first, second = await asyncio.gather(
                client.update("p1", set_quantity(4)),
                client.update("p1", lambda f: {**f, "price": 12.0}),
            )
        finally:
            await client.close()

        assert first.status == UpdateStatus.ACCEPTED
        assert second.status == UpdateStatus.ACCEPTED
        assert first.entity.version == 2
        assert second.entity.version == 3
        stored = await server_store.get_product("p1")
        assert stored["version"] == 3
        assert stored["quantity"] == 4
        assert stored["price"] == 12.0

    @pytest.mark.asyncio
    async def test_missing_product(self, device):
        """Unknown products are MISSING."""
        result = await device.update("ghost", set_quantity(1))

        assert result.status == UpdateStatus.MISSING

    @pytest.mark.asyncio
    async def test_retried_write_applies_once(self, device, server_store, products):
        """Resending the same key returns the stored response."""
        key = new_idempotency_key()

        first = await device.http.update_product(
            "p1", 1, {"quantity": 4}, idempotency_key=key, location_id=LOCATION
        )
        again = await device.http.update_product(
            "p1", 1, {"quantity": 4}, idempotency_key=key, location_id=LOCATION
        )

        assert again == first
        assert (await server_store.get_product("p1"))["version"] == 2
        with pytest.raises(ConflictError):
            await device.http.update_product(
                "p1", 1, {"quantity": 3}, idempotency_key=new_idempotency_key()
            )

    @pytest.mark.asyncio
    async def test_scoped_miss_resubmitted_by_identity(self, device, server_store):
        """A product outside the device's location is still updated by id."""
        await server_store.create_product({"quantity": 2}, product_id="p9", location_id="warehouse")
        device.cache.put(VersionedEntity.from_dict(await server_store.get_product("p9")))

        result = await device.update("p9", set_quantity(1))

        assert result.accepted
        stored = await server_store.get_product("p9")
        assert stored["version"] == 2
        assert stored["quantity"] == 1
        assert stored["location_id"] == "warehouse"


class TestOfflineSync:
    """Queueing while offline and reconciling afterwards."""

    @pytest.mark.asyncio
    async def test_offline_edits_sync_in_order(self, device, server_store, products):
        """Chained offline edits land in order on reconnect."""
        await device.get("p1")
        device.set_online(False)

        first = await device.update("p1", set_quantity(4))
        second = await device.update("p1", set_quantity(3))

        assert first.queued and second.queued
        assert first.status == UpdateStatus.TRANSIENT
        assert device.cache.get("p1").fields["quantity"] == 3
        assert (await server_store.get_product("p1"))["version"] == 1

        summary = await device.network_regained()

        assert summary.synced == 2
        assert summary.conflicts == 0
        stored = await server_store.get_product("p1")
        assert stored["version"] == 3
        assert stored["quantity"] == 3
        assert await device.pending_mutations() == []
        assert device.cache.get("p1").version == 3

    @pytest.mark.asyncio
    async def test_queued_work_keeps_order_online(self, device, server_store, products):
        """While an entity has queued work, new edits queue behind it."""
        await device.get("p1")
        device.set_online(False)
        await device.update("p1", set_quantity(4))
        device.set_online(True)

        result = await device.update("p1", set_quantity(2))

        assert result.queued
        assert len(await device.pending_mutations()) == 2

    @pytest.mark.asyncio
    async def test_offline_conflict_then_retry(self, device, other_device, server_store, products):
        """A queued edit that lost the race is held until resolved."""
        await device.get("p1")
        device.set_online(False)
        queued = await device.update("p1", set_quantity(4))
        await other_device.update("p1", lambda f: {**f, "price": 11.0})

        summary = await device.network_regained()

        assert summary.conflicts == 1
        [held] = await device.pending_mutations()
        assert held.status == MutationStatus.CONFLICTED
        assert held.server_state["version"] == 2

        requeued = await device.resolve_conflict(queued.idempotency_key, ConflictStrategy.RETRY)
        assert requeued.base_version == 2
        assert requeued.idempotency_key == queued.idempotency_key

        summary = await device.sync_now()

        assert summary.synced == 1
        stored = await server_store.get_product("p1")
        assert stored["version"] == 3
        assert stored["quantity"] == 4

    @pytest.mark.asyncio
    async def test_retry_carries_chained_edits(self, device, other_device, server_store, products):
        """Edits queued behind a retried conflict sync without conflicting again."""
        await device.get("p1")
        device.set_online(False)
        first = await device.update("p1", set_quantity(4))
        await device.update("p1", set_quantity(3))
        await other_device.update("p1", lambda f: {**f, "price": 11.0})

        summary = await device.network_regained()
        assert summary.conflicts == 1

        await device.resolve_conflict(first.idempotency_key, ConflictStrategy.RETRY)
        summary = await device.sync_now()

        assert summary.synced == 2
        assert summary.conflicts == 0
        assert await device.pending_mutations() == []
        stored = await server_store.get_product("p1")
        assert stored["version"] == 4
        assert stored["quantity"] == 3

    @pytest.mark.asyncio
    async def test_offline_conflict_then_discard(self, device, other_device, server_store, products):
        """Discarding adopts the server's record locally."""
        await device.get("p1")
        device.set_online(False)
        queued = await device.update("p1", set_quantity(4))
        await other_device.update("p1", set_quantity(1))
        await device.network_regained()

        await device.resolve_conflict(queued.idempotency_key, ConflictStrategy.DISCARD)

        assert await device.pending_mutations() == []
        local = device.cache.get("p1")
        assert local.version == 2
        assert local.fields["quantity"] == 1

    @pytest.mark.asyncio
    async def test_durable_queue_survives_restart(self, app, data_dir, server_store, products):
        """Edits queued before a restart are synced after it."""
        queue_path = str(data_dir / "device-queue.db")
        config = client_config(queue=QueueConfig(db_path=queue_path))

        first = InventoryClient(config, transport=httpx.ASGITransport(app=app))
        await first.connect()
        await first.get("p1")
        first.set_online(False)
        await first.update("p1", set_quantity(2))
        await first.close()

        second = InventoryClient(config, transport=httpx.ASGITransport(app=app))
        await second.connect()
        try:
            assert len(await second.pending_mutations()) == 1
            summary = await second.sync_now()
        finally:
            await second.close()

        assert summary.synced == 1
        assert (await server_store.get_product("p1"))["quantity"] == 2


class TestStockDeduction:
    """Atomic deduction and checkout."""

    @pytest.mark.asyncio
    async def test_deduct_all_or_nothing(self, device, server_store, products):
        """One short line leaves every line untouched."""
        result = await device.deduct(
            LOCATION, [StockLine("p1", 2), StockLine("p2", 3, variant_code="M")]
        )

        assert result.status == DeductionStatus.INSUFFICIENT_STOCK
        [line] = result.failed_lines
        assert line.index == 1
        assert line.variant_code == "M"
        assert line.available == 1
        assert (await server_store.get_product("p1"))["quantity"] == 5

    @pytest.mark.asyncio
    async def test_deduct_success_schedules_refresh(self, device, server_store, products):
        """Local stock changes only after the next refresh."""
        await device.get("p1")

        result = await device.deduct(LOCATION, [StockLine("p1", 2)])

        assert result.ok
        assert device.cache.get("p1").fields["quantity"] == 5
        summary = await device.sync_now()
        assert summary.refreshed == 1
        assert device.cache.get("p1").fields["quantity"] == 3

    @pytest.mark.asyncio
    async def test_checkout_is_idempotent(self, device, server_store, products):
        """Submitting a sale twice returns the original and deducts once."""
        key = new_idempotency_key()
        lines = [StockLine("p1", 1), StockLine("p2", 1, variant_code="S")]

        first = await device.checkout(LOCATION, lines, idempotency_key=key, extra={"total": 45.0})
        again = await device.checkout(LOCATION, lines, idempotency_key=key, extra={"total": 45.0})

        assert first.ok and again.ok
        assert again.sale["id"] == first.sale["id"]
        assert first.sale["total"] == 45.0
        assert await server_store.count_sales() == 1
        p2 = await server_store.get_product("p2")
        assert p2["variants"]["S"] == 1
        assert p2["quantity"] == 2


class TestDegradedMode:
    """Behaviour while the server is unavailable."""

    @pytest.mark.asyncio
    async def test_circuit_opens_and_writes_queue(self):
        """Repeated failures open the circuit; later writes never hit the network."""
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(503, json={"message": "down"})

        config = client_config(breaker=BreakerConfig(failure_threshold=2, cooldown_ms=60_000))
        client = InventoryClient(config, transport=httpx.MockTransport(handler))
        await client.connect()
        try:
            for product_id in ("p1", "p2", "p3"):
                client.cache.put(VersionedEntity(product_id, 1, {"quantity": 5}))
            states = []
            client.on_circuit_change(lambda old, new: states.append(new.value))

            first = await client.update("p1", set_quantity(4))
            second = await client.update("p2", set_quantity(4))
            assert client.read_only
            sent = len(calls)
            third = await client.update("p3", set_quantity(4))

            assert first.queued and second.queued and third.queued
            assert len(calls) == sent
            assert states == ["open"]
            assert len(await client.pending_mutations()) == 3

            cached = await client.get("p1", refresh=True)
            assert cached.fields["quantity"] == 4

            health = await client.health()
            assert health["circuit"]["state"] == "open"
            assert health["queue"]["pending"] == 3
        finally:
            await client.close()
