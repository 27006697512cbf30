from datetime import timedelta

import pytest

from n7_threat.schemas.alert import AlertStatus


@pytest.mark.asyncio
async def test_find_related_filters_and_orders(store, make_alert, now):
    alert = make_alert(user_id="u1", ip_address="10.0.0.1")
    older = await store.add(make_alert(user_id="u1", created_at=now - timedelta(minutes=30)))
    newer = await store.add(make_alert(ip_address="10.0.0.1", created_at=now - timedelta(minutes=5)))
    await store.add(make_alert(user_id="u1", created_at=now - timedelta(hours=3)))
    await store.add(make_alert(user_id="u1", status=AlertStatus.RESOLVED.value))
    await store.add(make_alert(user_id="u1", status=AlertStatus.SUPPRESSED.value))
    await store.add(make_alert(user_id="someone-else", ip_address="10.9.9.9"))
    await store.add(alert)

    related = await store.find_related(alert, since=now - timedelta(hours=1))

    assert [a.id for a in related] == [newer.id, older.id]


@pytest.mark.asyncio
async def test_find_related_respects_limit(store, make_alert, now):
    for i in range(5):
        await store.add(make_alert(rule_id="brute_force-default", created_at=now - timedelta(minutes=i)))
    alert = make_alert(rule_id="brute_force-default")

    related = await store.find_related(alert, since=now - timedelta(hours=1), limit=3)

    assert len(related) == 3


@pytest.mark.asyncio
async def test_find_related_without_link_attributes(store, make_alert, now):
    await store.add(make_alert())
    assert await store.find_related(make_alert(), since=now - timedelta(hours=1)) == []


@pytest.mark.asyncio
async def test_mark_correlated_and_lookup(store, make_alert):
    first = await store.add(make_alert(user_id="u1"))
    second = await store.add(make_alert(user_id="u1"))

    await store.mark_correlated("group-1", {first.id: [second.id], second.id: [first.id]})

    group = await store.find_by_correlation_id("group-1")
    assert {a.id for a in group} == {first.id, second.id}
    assert all(a.is_correlated for a in group)

    stored = await store.get(first.id)
    assert stored.correlated_alerts == [second.id]


@pytest.mark.asyncio
async def test_reassign_correlation_counts_rows(store, make_alert):
    await store.add(make_alert(correlation_id="a", is_correlated=True))
    await store.add(make_alert(correlation_id="a", is_correlated=True))
    await store.add(make_alert(correlation_id="b", is_correlated=True))
    await store.add(make_alert(correlation_id="c", is_correlated=True))

    affected = await store.reassign_correlation(["a", "b"], "merged")

    assert affected == 3
    assert len(await store.find_by_correlation_id("merged")) == 3
    assert await store.find_by_correlation_id("a") == []
    assert len(await store.find_by_correlation_id("c")) == 1


@pytest.mark.asyncio
async def test_fingerprint_lookup_and_occurrence_bump(store, make_alert, now):
    alert = await store.add(make_alert(fingerprint="abc123abc123abc1"))

    found = await store.find_by_fingerprint("abc123abc123abc1")
    assert found.id == alert.id
    assert await store.find_by_fingerprint("0000000000000000") is None

    later = now + timedelta(minutes=2)
    touched = await store.touch_occurrence(alert.id, later)

    assert touched.occurrence_count == 2
    assert touched.last_seen == later
    assert touched.first_seen == now
