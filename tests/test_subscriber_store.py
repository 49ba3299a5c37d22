"""
Tests for SubscriberStore.

Covers the lifecycle transitions (subscribe / unsubscribe / bounce /
complaint / delete), the tenant counters kept alongside them, listing with
search, and the engagement and revenue bookkeeping.
"""

import asyncio

import pytest

from app.core.exceptions import DuplicateSubscriberRace, SubscriberNotFound
from app.models.subscriber import (
    EventType,
    SubscriberAttributes,
    SubscriberSource,
    SubscriberStatus,
)
from tests.conftest import TENANT, assert_counters_consistent


# ---------------------------------------------------------------------------
# subscribe
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_subscribe_creates_active_subscriber_and_counts_it(subscribers, storage):
    """A first subscribe inserts one active row and bumps total/active/growth."""
    # Act
    subscriber = await subscribers.subscribe(
        TENANT, " Ada@X.com ", SubscriberAttributes(first_name="Ada"), campaign_id="camp_1"
    )

    # Assert
    assert subscriber.email == "ada@x.com"
    assert subscriber.status == SubscriberStatus.ACTIVE
    assert subscriber.campaigns == ["camp_1"]
    stats = await subscribers.get_stats(TENANT)
    assert stats.total_subscribers == 1
    assert stats.active_subscribers == 1
    assert stats.subscriber_growth == 1
    events = await storage.list_events(TENANT, subscriber.id)
    assert [e.type for e in events] == [EventType.SUBSCRIBE]


@pytest.mark.asyncio
async def test_subscribe_is_idempotent_for_active_address(subscribers):
    """Subscribing an active address again returns the same row and leaves counters alone."""
    # Arrange
    first = await subscribers.subscribe(TENANT, "ada@x.com")

    # Act
    second = await subscribers.subscribe(TENANT, "ADA@x.com")

    # Assert
    assert second.id == first.id
    stats = await subscribers.get_stats(TENANT)
    assert stats.total_subscribers == 1
    assert stats.active_subscribers == 1


@pytest.mark.asyncio
async def test_resubscribe_reactivates_unsubscribed_row(subscribers, clock):
    """An unsubscribed row is flipped back to active instead of creating a second row."""
    # Arrange
    original = await subscribers.subscribe(TENANT, "ada@x.com")
    await subscribers.unsubscribe(TENANT, "ada@x.com")
    stats = await subscribers.get_stats(TENANT)
    assert (stats.active_subscribers, stats.unsubscribed_subscribers, stats.total_subscribers) == (0, 1, 1)
    clock.advance(days=1)

    # Act
    reactivated = await subscribers.subscribe(
        TENANT, "ada@x.com", SubscriberAttributes(source=SubscriberSource.LANDING_PAGE)
    )

    # Assert
    assert reactivated.id == original.id
    assert reactivated.status == SubscriberStatus.ACTIVE
    assert reactivated.unsubscribed_at is None
    assert reactivated.subscribed_at == clock()
    assert reactivated.source == SubscriberSource.LANDING_PAGE
    stats = await subscribers.get_stats(TENANT)
    assert (stats.active_subscribers, stats.unsubscribed_subscribers, stats.total_subscribers) == (1, 0, 1)


@pytest.mark.asyncio
async def test_bounced_address_is_not_reactivated_by_subscribe(subscribers):
    # Arrange
    await subscribers.subscribe(TENANT, "ada@x.com")
    await subscribers.mark_bounced(TENANT, "ada@x.com")

    # Act
    result = await subscribers.subscribe(TENANT, "ada@x.com")

    # Assert
    assert result.status == SubscriberStatus.BOUNCED
    stats = await subscribers.get_stats(TENANT)
    assert stats.bounced_subscribers == 1
    assert stats.active_subscribers == 0


@pytest.mark.asyncio
async def test_subscribe_retries_once_after_duplicate_race(subscribers, mocker):
    """A DuplicateSubscriberRace on the first attempt is resolved by one retry."""
    # Arrange
    expected = mocker.Mock()
    attempt = mocker.patch.object(
        subscribers,
        "_subscribe_once",
        side_effect=[DuplicateSubscriberRace(TENANT, "ada@x.com"), expected],
    )

    # Act
    result = await subscribers.subscribe(TENANT, "ada@x.com")

    # Assert
    assert result is expected
    assert attempt.call_count == 2


@pytest.mark.asyncio
async def test_concurrent_subscribes_for_same_address_create_one_row(subscribers):
    # Act
    results = await asyncio.gather(
        *[subscribers.subscribe(TENANT, "ada@x.com") for _ in range(10)]
    )

    # Assert
    assert len({s.id for s in results}) == 1
    stats = await subscribers.get_stats(TENANT)
    assert stats.total_subscribers == 1
    assert stats.active_subscribers == 1


# ---------------------------------------------------------------------------
# unsubscribe / bounce / complaint
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unsubscribe_unknown_address_returns_false(subscribers):
    assert await subscribers.unsubscribe(TENANT, "nobody@x.com") is False


@pytest.mark.asyncio
async def test_unsubscribe_twice_only_counts_once(subscribers):
    # Arrange
    await subscribers.subscribe(TENANT, "ada@x.com")

    # Act
    assert await subscribers.unsubscribe(TENANT, "ada@x.com") is True
    assert await subscribers.unsubscribe(TENANT, "ada@x.com") is True

    # Assert
    stats = await subscribers.get_stats(TENANT)
    assert stats.unsubscribed_subscribers == 1
    assert stats.active_subscribers == 0


@pytest.mark.asyncio
async def test_events_follow_transition_order(subscribers, storage):
    # Arrange
    subscriber = await subscribers.subscribe(TENANT, "ada@x.com")

    # Act
    await subscribers.unsubscribe(TENANT, "ada@x.com", reason="too many emails")
    await subscribers.subscribe(TENANT, "ada@x.com")
    await subscribers.mark_complained(TENANT, "ada@x.com")

    # Assert
    events = await storage.list_events(TENANT, subscriber.id)
    assert [e.type for e in events] == [
        EventType.SUBSCRIBE,
        EventType.UNSUBSCRIBE,
        EventType.SUBSCRIBE,
        EventType.COMPLAINT,
    ]
    assert events[1].metadata == {"reason": "too many emails"}


@pytest.mark.asyncio
async def test_mark_bounced_unknown_address_returns_false(subscribers):
    assert await subscribers.mark_bounced(TENANT, "nobody@x.com") is False


@pytest.mark.asyncio
async def test_counters_stay_consistent_over_mixed_operations(subscribers):
    """active + unsubscribed + bounced + complained == total after every step."""
    emails = [f"user{i}@x.com" for i in range(6)]
    created = {}

    async def check():
        assert_counters_consistent(await subscribers.get_stats(TENANT))

    for email in emails:
        created[email] = await subscribers.subscribe(TENANT, email)
        await check()

    await subscribers.unsubscribe(TENANT, emails[0])
    await check()
    await subscribers.mark_bounced(TENANT, emails[1])
    await check()
    await subscribers.mark_complained(TENANT, emails[2])
    await check()
    await subscribers.subscribe(TENANT, emails[0])
    await check()
    await subscribers.unsubscribe(TENANT, emails[3])
    await check()
    await subscribers.delete(TENANT, created[emails[3]].id)
    await check()
    await subscribers.delete(TENANT, created[emails[1]].id)
    await check()
    await subscribers.delete(TENANT, created[emails[4]].id)
    await check()

    stats = await subscribers.get_stats(TENANT)
    assert stats.total_subscribers == 3
    assert stats.active_subscribers == 2
    assert stats.complained_subscribers == 1
    assert stats.bounced_subscribers == 0
    assert stats.unsubscribed_subscribers == 0


@pytest.mark.asyncio
async def test_counters_stay_consistent_under_concurrency(subscribers):
    emails = [f"user{i}@x.com" for i in range(20)]
    await asyncio.gather(*[subscribers.subscribe(TENANT, e) for e in emails])

    await asyncio.gather(
        *[subscribers.unsubscribe(TENANT, e) for e in emails[:10]],
        *[subscribers.mark_bounced(TENANT, e) for e in emails[5:15]],
        *[subscribers.subscribe(TENANT, e) for e in emails[:5]],
    )

    stats = await subscribers.get_stats(TENANT)
    assert_counters_consistent(stats)
    assert stats.total_subscribers == 20


@pytest.mark.asyncio
async def test_per_address_locks_do_not_accumulate(subscribers, storage):
    emails = [f"user{i}@x.com" for i in range(50)]

    await asyncio.gather(*[subscribers.subscribe(TENANT, e) for e in emails])

    assert storage._locks == {}


@pytest.mark.asyncio
async def test_tenants_do_not_share_counters(subscribers):
    await subscribers.subscribe(TENANT, "ada@x.com")
    await subscribers.subscribe("other_tenant", "ada@x.com")

    assert (await subscribers.get_stats(TENANT)).total_subscribers == 1
    assert (await subscribers.get_stats("other_tenant")).total_subscribers == 1
    assert (await subscribers.get_stats("empty_tenant")).total_subscribers == 0


# ---------------------------------------------------------------------------
# list / get / update / delete
# ---------------------------------------------------------------------------

@pytest.fixture
async def populated(subscribers, clock):
    for email, first_name in [("ada@x.com", "Ada"), ("bob@y.com", "Bob"), ("carol@x.com", "Carol")]:
        await subscribers.subscribe(TENANT, email, SubscriberAttributes(first_name=first_name))
        clock.advance(minutes=1)
    await subscribers.unsubscribe(TENANT, "bob@y.com")
    return subscribers


@pytest.mark.asyncio
async def test_list_total_counts_every_search_match(populated):
    # Act
    page = await populated.list(TENANT, search="x.com", page_size=1)

    # Assert
    assert page.total == 2
    assert len(page.subscribers) == 1


@pytest.mark.asyncio
async def test_list_filters_by_status_and_sorts(populated):
    active = await populated.list(TENANT, status="active", sort_by="email", sort_direction="asc")
    assert [s.email for s in active.subscribers] == ["ada@x.com", "carol@x.com"]

    newest_first = await populated.list(TENANT)
    assert [s.email for s in newest_first.subscribers][0] == "carol@x.com"


@pytest.mark.asyncio
async def test_list_search_matches_names_case_insensitively(populated):
    page = await populated.list(TENANT, search="CAROL")
    assert [s.email for s in page.subscribers] == ["carol@x.com"]


@pytest.mark.asyncio
async def test_list_rejects_unknown_sort_field(subscribers):
    with pytest.raises(ValueError):
        await subscribers.list(TENANT, sort_by="password")


@pytest.mark.asyncio
async def test_get_unknown_subscriber_raises(subscribers):
    with pytest.raises(SubscriberNotFound):
        await subscribers.get(TENANT, "missing")


@pytest.mark.asyncio
async def test_get_does_not_cross_tenants(subscribers):
    subscriber = await subscribers.subscribe(TENANT, "ada@x.com")
    with pytest.raises(SubscriberNotFound):
        await subscribers.get("other_tenant", subscriber.id)


@pytest.mark.asyncio
async def test_update_changes_profile_fields_only(subscribers):
    # Arrange
    subscriber = await subscribers.subscribe(TENANT, "ada@x.com")

    # Act
    updated = await subscribers.update(
        TENANT, subscriber.id, {"first_name": "Ada", "custom_fields": {"plan": "gold", "orders": 3}}
    )

    # Assert
    assert updated.first_name == "Ada"
    assert updated.custom_fields == {"plan": "gold", "orders": 3}
    assert updated.status == SubscriberStatus.ACTIVE
    stored = await subscribers.get(TENANT, subscriber.id)
    assert stored.first_name == "Ada"


@pytest.mark.asyncio
async def test_delete_unknown_subscriber_raises(subscribers):
    with pytest.raises(SubscriberNotFound):
        await subscribers.delete(TENANT, "missing")


@pytest.mark.asyncio
async def test_delete_then_subscribe_creates_fresh_row(subscribers):
    original = await subscribers.subscribe(TENANT, "ada@x.com")
    await subscribers.delete(TENANT, original.id)

    again = await subscribers.subscribe(TENANT, "ada@x.com")

    assert again.id != original.id
    stats = await subscribers.get_stats(TENANT)
    assert stats.total_subscribers == 1
    assert stats.active_subscribers == 1


# ---------------------------------------------------------------------------
# engagement and revenue
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_record_engagement_weights_opens_and_clicks(subscribers, clock):
    await subscribers.subscribe(TENANT, "ada@x.com")

    assert await subscribers.record_engagement(TENANT, "ada@x.com", EventType.OPEN, "camp_1")
    assert await subscribers.record_engagement(TENANT, "ada@x.com", EventType.CLICK, "camp_1")

    subscriber = await subscribers.find_by_email(TENANT, "ada@x.com")
    assert subscriber.engagement_score == 4.0
    assert subscriber.last_engagement == clock()


@pytest.mark.asyncio
async def test_record_engagement_rejects_lifecycle_events(subscribers):
    with pytest.raises(ValueError):
        await subscribers.record_engagement(TENANT, "ada@x.com", EventType.BOUNCE)


@pytest.mark.asyncio
async def test_log_event_for_unknown_address_returns_none(subscribers):
    assert await subscribers.log_event(TENANT, "nobody@x.com", EventType.EMAIL_SENT) is None


@pytest.mark.asyncio
async def test_track_revenue_updates_stats_and_breakdown(subscribers):
    # Arrange
    subscriber = await subscribers.subscribe(TENANT, "ada@x.com")

    # Act
    await subscribers.track_revenue(TENANT, subscriber.id, "camp_1", 50.0, "order_1")
    await subscribers.track_revenue(TENANT, subscriber.id, "camp_2", 80.0, "order_2")
    await subscribers.track_revenue(TENANT, subscriber.id, "camp_1", 25.0, "order_3")

    # Assert
    stats = await subscribers.get_stats(TENANT)
    assert stats.total_revenue == 155.0
    assert stats.conversions == 3
    revenue = await subscribers.get_revenue_stats(TENANT)
    assert revenue.total == 155.0
    assert revenue.last_thirty_days == 155.0
    assert [(c.campaign_id, c.revenue, c.conversions) for c in revenue.by_campaign] == [
        ("camp_2", 80.0, 1),
        ("camp_1", 75.0, 2),
    ]
    assert_counters_consistent(stats)


@pytest.mark.asyncio
async def test_track_revenue_rejects_non_positive_amount(subscribers):
    subscriber = await subscribers.subscribe(TENANT, "ada@x.com")
    with pytest.raises(ValueError):
        await subscribers.track_revenue(TENANT, subscriber.id, "camp_1", 0, "order_1")
