"""Tests for direct-chat resolution and participant lookups."""
import asyncio

import pytest
from sqlalchemy import func, select

from hotelchat.db import SessionLocal
from hotelchat.directory import (
    as_id,
    counterpart_ids,
    is_participant,
    participant_ids,
    resolve_or_create_direct_chat,
)
from hotelchat.errors import InvalidArgument, InvalidOperation, NotFound
from hotelchat.models import ChatParticipant, ChatRoom


async def _room_count():
    async with SessionLocal() as db:
        return (await db.execute(select(func.count(ChatRoom.id)))).scalar_one()


@pytest.mark.asyncio
async def test_same_room_regardless_of_order(people):
    a, b = people.customer.id, people.support.id
    async with SessionLocal() as db:
        first, created = await resolve_or_create_direct_chat(db, a, b)
        second, created_again = await resolve_or_create_direct_chat(db, b, a)
    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert await _room_count() == 1


@pytest.mark.asyncio
async def test_concurrent_first_joins_create_one_room(people):
    a, b = people.customer.id, people.owner.id

    async def resolve(x, y):
        async with SessionLocal() as db:
            room, created = await resolve_or_create_direct_chat(db, x, y)
            return room.id, created

    results = await asyncio.gather(*[resolve(a, b) if i % 2 else resolve(b, a) for i in range(6)])

    assert len({room_id for room_id, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1
    assert await _room_count() == 1
    async with SessionLocal() as db:
        rows = (await db.execute(select(ChatParticipant.user_id))).scalars().all()
    assert sorted(rows) == sorted([a, b])


@pytest.mark.asyncio
async def test_self_chat_is_rejected(people):
    async with SessionLocal() as db:
        with pytest.raises(InvalidOperation):
            await resolve_or_create_direct_chat(db, people.customer.id, people.customer.id)
    assert await _room_count() == 0


@pytest.mark.asyncio
async def test_missing_user_is_named(people):
    async with SessionLocal() as db:
        with pytest.raises(NotFound) as exc:
            await resolve_or_create_direct_chat(db, people.customer.id, 9999)
    assert "ID 9999" in exc.value.message
    assert await _room_count() == 0


@pytest.mark.asyncio
async def test_non_integer_target_is_invalid(people):
    async with SessionLocal() as db:
        with pytest.raises(InvalidArgument):
            await resolve_or_create_direct_chat(db, people.customer.id, "abc")


@pytest.mark.asyncio
async def test_participants_and_counterparts(people):
    a, b = people.customer.id, people.support.id
    async with SessionLocal() as db:
        room, _ = await resolve_or_create_direct_chat(db, a, b)
        assert await participant_ids(db, room.id) == sorted([a, b])
        assert await counterpart_ids(db, room.id, a) == [b]
        assert await is_participant(db, b, room.id)
        assert not await is_participant(db, people.owner.id, room.id)
        assert not await is_participant(db, a, room.id + 100)


@pytest.mark.parametrize("value,expected", [(5, 5), ("12", 12), (" 7 ", 7), ("-3", -3)])
def test_as_id_accepts_integers(value, expected):
    assert as_id(value, "id") == expected


@pytest.mark.parametrize("value", [True, None, "1.5", "abc", 2.0, "", "--5", "5-", "-"])
def test_as_id_rejects_everything_else(value):
    with pytest.raises(InvalidArgument):
        as_id(value, "id")
