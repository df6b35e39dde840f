import json
from decimal import Decimal

import pytest

from server.store import InMemoryBalanceStore, InMemorySessionStore, JsonFileSessionStore, load_seed
from shared.errors import InsufficientFunds, SessionNotFound
from shared.models import Role, Session, SessionMode, SessionStatus


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def new_session(session_id: str = "s1") -> Session:
    return Session(
        session_id=session_id,
        reader_id="reader-a",
        client_id="client-1",
        rate_per_minute=Decimal("2.50"),
        mode=SessionMode.AUDIO,
        requested_at=100.0,
    )


@pytest.mark.anyio
async def test_compare_and_swap_only_from_expected_status() -> None:
    store = InMemorySessionStore()
    await store.create(new_session())

    moved = await store.compare_and_swap_status(
        "s1", SessionStatus.REQUESTED, SessionStatus.ACCEPTED, {"accepted_at": 5.0}, idempotency_key="k"
    )
    stale = await store.compare_and_swap_status("s1", SessionStatus.REQUESTED, SessionStatus.CANCELLED)

    assert moved is not None and moved.status == SessionStatus.ACCEPTED
    assert moved.applied_keys == {"accepted": "k"}
    assert stale is None
    assert (await store.get("s1")).status == SessionStatus.ACCEPTED


@pytest.mark.anyio
async def test_set_once_and_immutable_fields() -> None:
    store = InMemorySessionStore()
    await store.create(new_session())
    await store.compare_and_swap_status("s1", SessionStatus.REQUESTED, SessionStatus.ACCEPTED, {"accepted_at": 5.0})
    await store.compare_and_swap_status("s1", SessionStatus.ACCEPTED, SessionStatus.ACTIVE, {"accepted_at": 9.0})

    assert (await store.get("s1")).accepted_at == 5.0
    with pytest.raises(ValueError):
        await store.compare_and_swap_status(
            "s1", SessionStatus.ACTIVE, SessionStatus.ENDED, {"rate_per_minute": Decimal("0.01")}
        )
    assert (await store.get("s1")).status == SessionStatus.ACTIVE


@pytest.mark.anyio
async def test_returned_records_are_copies() -> None:
    store = InMemorySessionStore()
    created = await store.create(new_session())
    created.billed_seconds = 999

    assert (await store.get("s1")).billed_seconds == 0
    with pytest.raises(ValueError):
        await store.create(new_session())
    with pytest.raises(SessionNotFound):
        await store.get("missing")


@pytest.mark.anyio
async def test_billing_increments_only_while_active() -> None:
    store = InMemorySessionStore()
    await store.create(new_session())

    assert await store.increment_billing("s1", 60, Decimal("2.50")) is None
    await store.compare_and_swap_status("s1", SessionStatus.REQUESTED, SessionStatus.ACCEPTED)
    await store.compare_and_swap_status("s1", SessionStatus.ACCEPTED, SessionStatus.ACTIVE)
    updated = await store.increment_billing("s1", 60, Decimal("2.50"))

    assert updated.billed_seconds == 60
    assert updated.amount_charged == Decimal("2.50")
    with pytest.raises(ValueError):
        await store.increment_billing("s1", -1, Decimal("0"))
    assert [session.session_id for session in await store.list_sessions(SessionStatus.ACTIVE)] == ["s1"]


@pytest.mark.anyio
async def test_debit_never_goes_negative() -> None:
    balances = InMemoryBalanceStore({"client-1": "3.00"})

    assert await balances.debit("client-1", Decimal("2.50")) == Decimal("0.50")
    with pytest.raises(InsufficientFunds):
        await balances.debit("client-1", Decimal("0.51"))
    assert await balances.get_balance("client-1") == Decimal("0.50")
    assert await balances.get_balance("nobody") == Decimal("0.00")
    with pytest.raises(ValueError):
        await balances.credit("client-1", Decimal("0"))


@pytest.mark.anyio
async def test_json_store_survives_restart(tmp_path) -> None:
    path = tmp_path / "state" / "sessions.json"
    store = JsonFileSessionStore(path)
    await store.create(new_session())
    await store.compare_and_swap_status(
        "s1", SessionStatus.REQUESTED, SessionStatus.ACCEPTED, {"accepted_at": 7.0}, idempotency_key="k1"
    )

    reloaded = JsonFileSessionStore(path)
    assert await reloaded.load() == 1
    session = await reloaded.get("s1")
    assert session.status == SessionStatus.ACCEPTED
    assert session.rate_per_minute == Decimal("2.50")
    assert session.accepted_at == 7.0
    assert session.applied_keys == {"accepted": "k1"}

    assert await JsonFileSessionStore(tmp_path / "absent.json").load() == 0


def test_load_seed(tmp_path) -> None:
    seed = tmp_path / "seed.json"
    seed.write_text(
        json.dumps(
            {
                "users": [
                    {"user_id": "reader-a", "display_name": "Reader A", "role": "reader", "rate_per_minute": "1.5"},
                    {"user_id": "client-1", "role": "client"},
                ],
                "balances": {"client-1": "12"},
            }
        ),
        encoding="utf-8",
    )

    directory, balances = load_seed(seed)

    assert directory._profiles["reader-a"].rate_per_minute == Decimal("1.50")
    assert directory._profiles["reader-a"].role == Role.READER
    assert directory._profiles["client-1"].display_name == "client-1"
    assert balances._balances["client-1"] == Decimal("12.00")
