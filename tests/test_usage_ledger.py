import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import UsageLedgerError
from app.schemas.usage import UsageBucket
from app.services.usage_ledger import (
    calculate_usage_percentage,
    determine_plan_from_bucket,
    evaluate_limit,
    format_usage,
    generate_upgrade_suggestions,
    is_approaching_limit,
    resolve_plan_code,
    usage_ledger,
    usage_percentage,
)
from app.utils.dates import utcnow


def _bucket(**fields) -> UsageBucket:
    now = utcnow()
    base = {"_id": "b1", "user_id": "user_1", "period_start": now, "period_end": now + timedelta(days=30)}
    base.update(fields)
    return UsageBucket(**base)


async def _set_usage(db, user_id, **fields):
    await db.usage_buckets.update_one({"user_id": user_id}, {"$set": fields})


class TestEvaluateLimit:
    def test_credits_checked_against_prospective_total(self):
        rejected = evaluate_limit("credits", 997, 1000, 5)
        assert rejected.allowed is False
        assert rejected.message == "Not enough credits (1002/1000 required)"

        assert evaluate_limit("credits", 990, 1000, 5).allowed is True
        assert evaluate_limit("credits", 995, 1000, 5).allowed is True

    def test_posts_unlimited_always_allowed(self):
        for used in (0, 10, 1_000_000):
            assert evaluate_limit("posts", used, -1).allowed is True

    def test_posts_reject_at_limit(self):
        result = evaluate_limit("posts", 200, 200)
        assert result.allowed is False
        assert result.message == "Post limit reached (200/200)"
        assert evaluate_limit("posts", 199, 200).allowed is True

    def test_zero_limit_never_rejects(self):
        assert evaluate_limit("video_minutes", 500, 0, 30).allowed is True

    def test_video_minutes_message(self):
        result = evaluate_limit("video_minutes", 50, 60, 20)
        assert result.message == "Video minutes limit reached (70/60 required)"

    def test_brands(self):
        assert evaluate_limit("brands", 1, 1).message == "Brand limit reached (1/1)"

    def test_unknown_type_is_caller_error(self):
        with pytest.raises(ValueError):
            evaluate_limit("seats", 0, 1)


def test_usage_helpers():
    assert usage_percentage(1, 3) == 33
    assert usage_percentage(1, 8) == 13
    assert usage_percentage(5, -1) == 0
    assert calculate_usage_percentage(250, 200) == 100
    assert is_approaching_limit(160, 200) is True
    assert is_approaching_limit(159, 200) is False
    assert is_approaching_limit(10, -1) is False
    assert format_usage(1500, 2500) == "1,500/2,500"
    assert format_usage(7, -1) == "7 used"


class TestPlanInference:
    def test_known_limit_pairs(self):
        assert determine_plan_from_bucket(_bucket(posts_limit=200, credits_limit=200)) == "STARTER"
        assert determine_plan_from_bucket(_bucket(posts_limit=-1, credits_limit=-1)) == "AGENCY"

    def test_customised_limits_are_unknown(self):
        assert determine_plan_from_bucket(_bucket(posts_limit=200, credits_limit=700)) == "UNKNOWN"

    def test_no_bucket_is_free(self):
        assert determine_plan_from_bucket(None) == "FREE"

    def test_stored_plan_code_wins(self):
        assert resolve_plan_code(_bucket(plan_code="STARTER", posts_limit=200, credits_limit=700)) == "STARTER"


class TestUpgradeSuggestions:
    def test_credits_on_starter(self):
        suggestions = generate_upgrade_suggestions("credits", "STARTER")
        assert [s["type"] for s in suggestions] == ["addon", "upgrade"]
        assert suggestions[0]["addonType"] == "CREDITS_500"
        assert suggestions[0]["price"] == "$5.00"
        assert suggestions[1]["planCode"] == "PRO_50"

    def test_credits_on_pro_only_offers_addon(self):
        assert [s["type"] for s in generate_upgrade_suggestions("credits", "PRO_200")] == ["addon"]

    def test_brands_walk_the_plan_ladder(self):
        suggestions = generate_upgrade_suggestions("brands", "PRO_200")
        assert suggestions[0]["addonType"] == "BRAND"
        assert suggestions[0]["price"] == "$5.00/month"
        assert suggestions[1]["planCode"] == "PRO_500"
        assert suggestions[1]["price"] == "$79.99/month"

    def test_brands_on_agency_has_no_upgrade(self):
        assert len(generate_upgrade_suggestions("brands", "AGENCY")) == 1

    def test_unknown_plan_degrades_to_addons(self):
        assert [s["type"] for s in generate_upgrade_suggestions("brands", "UNKNOWN")] == ["addon"]


class TestUsageBucket:
    @pytest.mark.asyncio
    async def test_no_subscription_means_no_bucket(self, db):
        assert await usage_ledger.get_current_usage_bucket("nobody") is None

    @pytest.mark.asyncio
    async def test_canceled_subscription_has_no_bucket(self, db, make_subscription):
        await make_subscription(status="canceled")
        assert await usage_ledger.get_current_usage_bucket("user_1") is None

    @pytest.mark.asyncio
    async def test_bucket_materialised_once_per_period(self, db, make_subscription):
        subscription = await make_subscription(plan_code="PRO_50")

        first = await usage_ledger.get_current_usage_bucket("user_1")
        second = await usage_ledger.get_current_usage_bucket("user_1")

        assert first.id == second.id
        assert await db.usage_buckets.count_documents({"user_id": "user_1"}) == 1
        assert first.plan_code == "PRO_50"
        assert (first.posts_limit, first.credits_limit, first.video_minutes_limit) == (1000, 1000, 60)
        assert abs((first.period_start - subscription["current_period_start"]).total_seconds()) < 1

    @pytest.mark.asyncio
    async def test_plan_change_rebases_limits_keeping_addons(self, db, make_subscription):
        await make_subscription(plan_code="STARTER")
        await usage_ledger.get_current_usage_bucket("user_1")
        await usage_ledger.raise_limit("user_1", "credits_limit", 500)

        await db.subscriptions.update_one({"user_id": "user_1"}, {"$set": {"plan_code": "PRO_50"}})
        bucket = await usage_ledger.get_current_usage_bucket("user_1")

        assert bucket.plan_code == "PRO_50"
        assert bucket.credits_limit == 1500
        assert bucket.posts_limit == 1000

    @pytest.mark.asyncio
    async def test_store_failure_raises_ledger_error(self, db, monkeypatch):
        from pymongo.errors import ServerSelectionTimeoutError

        async def unavailable(user_id):
            raise ServerSelectionTimeoutError("no primary")

        monkeypatch.setattr(usage_ledger, "get_live_subscription", unavailable)
        with pytest.raises(UsageLedgerError):
            await usage_ledger.get_current_usage_bucket("user_1")


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_denies_overshoot_without_mutation(self, db, make_subscription):
        await make_subscription(plan_code="PRO_50")
        await usage_ledger.get_current_usage_bucket("user_1")
        await _set_usage(db, "user_1", credits_used=997)

        result = await usage_ledger.reserve("user_1", "credits", 5)

        assert result.allowed is False
        assert result.current_usage == 997
        assert result.limit == 1000
        doc = await db.usage_buckets.find_one({"user_id": "user_1"})
        assert doc["credits_used"] == 997

    @pytest.mark.asyncio
    async def test_reserve_allows_and_increments(self, db, make_subscription):
        await make_subscription(plan_code="PRO_50")
        await usage_ledger.get_current_usage_bucket("user_1")
        await _set_usage(db, "user_1", credits_used=990)

        result = await usage_ledger.reserve("user_1", "credits", 5)

        assert result.allowed is True
        assert result.current_usage == 995

    @pytest.mark.asyncio
    async def test_unlimited_posts_always_reserve(self, db, make_subscription):
        await make_subscription(plan_code="AGENCY")
        await usage_ledger.get_current_usage_bucket("user_1")
        await _set_usage(db, "user_1", posts_used=123_456)

        result = await usage_ledger.reserve("user_1", "posts", 1)
        assert result.allowed is True
        assert result.current_usage == 123_457

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overshoot(self, db, make_subscription):
        await make_subscription(plan_code="STARTER")
        await usage_ledger.get_current_usage_bucket("user_1")

        results = await asyncio.gather(*[usage_ledger.reserve("user_1", "credits", 30) for _ in range(10)])

        assert sum(1 for r in results if r.allowed) == 6
        doc = await db.usage_buckets.find_one({"user_id": "user_1"})
        assert doc["credits_used"] == 180

    @pytest.mark.asyncio
    async def test_reserve_retries_after_limit_raised(self, db, make_subscription):
        await make_subscription(plan_code="STARTER")
        stale = await usage_ledger.get_current_usage_bucket("user_1")
        await _set_usage(db, "user_1", credits_used=200)
        await usage_ledger.raise_limit("user_1", "credits_limit", 500)

        result = await usage_ledger.reserve("user_1", "credits", 10, bucket=stale)

        assert result.allowed is True
        assert result.limit == 700

    @pytest.mark.asyncio
    async def test_release_gives_units_back_but_not_below_zero(self, db, make_subscription):
        await make_subscription(plan_code="STARTER")
        result = await usage_ledger.reserve("user_1", "posts", 1)

        assert await usage_ledger.release(result.bucket.id, "posts", 1) is True
        assert await usage_ledger.release(result.bucket.id, "posts", 1) is False
        doc = await db.usage_buckets.find_one({"user_id": "user_1"})
        assert doc["posts_used"] == 0

    @pytest.mark.asyncio
    async def test_no_subscription_cannot_reserve(self, db):
        result = await usage_ledger.reserve("nobody", "posts", 1)
        assert result.allowed is False
        assert result.bucket is None


class TestLedgerWrites:
    @pytest.mark.asyncio
    async def test_increment_usage(self, db, make_subscription):
        await make_subscription(plan_code="STARTER")
        assert await usage_ledger.increment_usage("user_1", "video_minutes", 12) is True
        assert await usage_ledger.increment_usage("user_1", "brands", 1) is False
        doc = await db.usage_buckets.find_one({"user_id": "user_1"})
        assert doc["video_minutes_used"] == 12

    @pytest.mark.asyncio
    async def test_raise_limit_is_additive(self, db, make_subscription):
        await make_subscription(plan_code="STARTER")
        await usage_ledger.raise_limit("user_1", "video_minutes_limit", 60)
        bucket = await usage_ledger.raise_limit("user_1", "video_minutes_limit", 60)
        assert bucket.video_minutes_limit == 120
        assert bucket.addon_boosts == {"video_minutes_limit": 120}

    @pytest.mark.asyncio
    async def test_raise_unlimited_is_noop(self, db, make_subscription):
        await make_subscription(plan_code="AGENCY")
        bucket = await usage_ledger.raise_limit("user_1", "posts_limit", 1000)
        assert bucket.posts_limit == -1

    @pytest.mark.asyncio
    async def test_raise_unknown_field(self, db):
        with pytest.raises(ValueError):
            await usage_ledger.raise_limit("user_1", "websites_limit", 1)

    @pytest.mark.asyncio
    async def test_watermark_by_plan(self, db, make_subscription):
        assert await usage_ledger.has_watermark("nobody") is True
        await make_subscription(user_id="starter_user", plan_code="STARTER")
        await make_subscription(user_id="pro_user", plan_code="PRO_50")
        assert await usage_ledger.has_watermark("starter_user") is True
        assert await usage_ledger.has_watermark("pro_user") is False

    @pytest.mark.asyncio
    async def test_active_brand_count(self, db):
        await db.brands.insert_many([
            {"user_id": "user_1", "name": "A", "is_active": True},
            {"user_id": "user_1", "name": "B", "is_active": False},
            {"user_id": "user_2", "name": "C", "is_active": True},
        ])
        assert await usage_ledger.count_active_brands("user_1") == 1

    @pytest.mark.asyncio
    async def test_track_event_swallows_failures(self, db, monkeypatch):
        async def broken():
            raise RuntimeError("down")

        monkeypatch.setattr("app.services.usage_ledger.get_database", broken)
        await usage_ledger.track_event("user_1", "posts_used", {"amount": 1})
