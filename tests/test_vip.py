"""Tests for the VIP registry."""

from datetime import UTC, datetime, timedelta

import pytest

from followup.classifier.vip import TIER_SLA_HOURS, VIPManager, normalize_email
from followup.config_schema import VIPConfig
from followup.core.errors import ValidationError
from followup.db.store import DatabaseStore


@pytest.fixture
async def vips(store: DatabaseStore) -> VIPManager:
    """Return an initialized VIPManager."""
    manager = VIPManager(store)
    await manager.initialize()
    return manager


class TestNormalizeEmail:
    """Tests for normalize_email()."""

    def test_strips_display_name_and_lowercases(self) -> None:
        assert normalize_email("The CEO <CEO@Example.com>") == "ceo@example.com"

    def test_plain_address(self) -> None:
        assert normalize_email("  Bob@Example.com ") == "bob@example.com"

    def test_empty(self) -> None:
        assert normalize_email(None) == ""
        assert normalize_email("") == ""


class TestLookup:
    """Tests for VIPManager.lookup()."""

    @pytest.mark.asyncio
    async def test_exact_address(self, vips: VIPManager) -> None:
        await vips.add_vip("ceo@example.com", 1, name="CEO")
        hit = vips.lookup("CEO <ceo@EXAMPLE.com>")
        assert hit is not None
        assert hit.tier == 1
        assert hit.priority == "CRITICAL"
        assert hit.domain_match is False

    @pytest.mark.asyncio
    async def test_domain_wildcard(self, vips: VIPManager) -> None:
        await vips.add_vip("*@bigclient.com", 2)
        hit = vips.lookup("anyone@bigclient.com")
        assert hit is not None
        assert hit.domain_match is True
        assert hit.priority == "HIGH"

    @pytest.mark.asyncio
    async def test_exact_address_beats_domain(self, vips: VIPManager) -> None:
        await vips.add_vip("*@bigclient.com", 3)
        await vips.add_vip("boss@bigclient.com", 1)
        assert vips.lookup("boss@bigclient.com").tier == 1
        assert vips.lookup("intern@bigclient.com").tier == 3

    @pytest.mark.asyncio
    async def test_unknown_sender(self, vips: VIPManager) -> None:
        assert vips.lookup("stranger@nowhere.org") is None
        assert vips.lookup(None) is None

    @pytest.mark.asyncio
    async def test_sla_hours_default_per_tier(self, vips: VIPManager) -> None:
        await vips.add_vip("a@x.com", 2)
        await vips.add_vip("b@x.com", 2, sla_hours=6)
        assert vips.lookup("a@x.com").sla_hours == TIER_SLA_HOURS[2]
        assert vips.lookup("b@x.com").sla_hours == 6


class TestMutations:
    """Tests for add/remove and persistence."""

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, vips: VIPManager) -> None:
        assert await vips.add_vip("ceo@example.com", 1, name="CEO") is True
        assert await vips.add_vip("ceo@example.com", 1, name="CEO") is False
        assert len(vips.list_vips()) == 1

    @pytest.mark.asyncio
    async def test_update_changes_tier(self, vips: VIPManager) -> None:
        await vips.add_vip("ceo@example.com", 1, name="CEO")
        await vips.add_vip("ceo@example.com", 3)
        contact = vips.list_vips()[0]
        assert contact.tier == 3
        assert contact.name == "CEO"

    @pytest.mark.asyncio
    async def test_remove(self, vips: VIPManager) -> None:
        await vips.add_vip("ceo@example.com", 1)
        assert await vips.remove_vip("CEO@example.com") is True
        assert vips.lookup("ceo@example.com") is None
        assert await vips.remove_vip("ceo@example.com") is False

    @pytest.mark.asyncio
    async def test_invalid_input(self, vips: VIPManager) -> None:
        with pytest.raises(ValidationError, match="must contain '@'"):
            await vips.add_vip("not-an-address", 1)
        with pytest.raises(ValidationError, match="Invalid VIP tier"):
            await vips.add_vip("a@b.com", 7)

    @pytest.mark.asyncio
    async def test_persists_across_managers(self, store: DatabaseStore) -> None:
        first = VIPManager(store)
        await first.initialize()
        await first.add_vip("ceo@example.com", 1, sla_hours=2)

        second = VIPManager(store)
        await second.initialize()
        assert second.lookup("ceo@example.com").sla_hours == 2

    @pytest.mark.asyncio
    async def test_list_filters_by_tier(self, vips: VIPManager) -> None:
        await vips.add_vip("b@x.com", 2)
        await vips.add_vip("a@x.com", 1)
        assert [c.email for c in vips.list_vips()] == ["a@x.com", "b@x.com"]
        assert [c.email for c in vips.list_vips(2)] == ["b@x.com"]


class TestSeedAndStats:
    """Tests for config seeding, SLA deadlines and statistics."""

    @pytest.mark.asyncio
    async def test_seed_skips_existing(self, vips: VIPManager) -> None:
        await vips.add_vip("ceo@example.com", 2)
        added = await vips.seed_from_config(
            [
                VIPConfig(email="ceo@example.com", tier=1),
                VIPConfig(email="cfo@example.com", tier=1),
            ]
        )
        assert added == 1
        assert vips.lookup("ceo@example.com").tier == 2

    @pytest.mark.asyncio
    async def test_calculate_sla_deadline(self, vips: VIPManager) -> None:
        await vips.add_vip("ceo@example.com", 1)
        received = datetime(2026, 10, 14, 14, 0, tzinfo=UTC)
        assert vips.calculate_sla_deadline("ceo@example.com", received) == received + timedelta(
            hours=4
        )
        assert vips.calculate_sla_deadline("x@y.com", received) is None

    @pytest.mark.asyncio
    async def test_statistics(self, vips: VIPManager) -> None:
        await vips.add_vip("a@x.com", 1)
        await vips.add_vip("*@y.com", 3)
        stats = vips.get_statistics()
        assert stats["total"] == 2
        assert stats["by_tier"] == {1: 1, 2: 0, 3: 1}
        assert stats["domain_entries"] == 1
        assert stats["average_sla_hours"] == 26.0
