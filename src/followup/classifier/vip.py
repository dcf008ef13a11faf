"""VIP contact registry.

Looks up sender importance tiers for the classification override. Entries are
keyed by normalized address (``Name <addr>`` reduced to ``addr``, lowercased)
or by a ``*@domain`` wildcard; an exact address wins over its domain.

VIPs persist in the ``vip_contacts`` table. The manager keeps an in-memory
index that ``initialize()`` loads and every mutation keeps in sync, so
``lookup()`` is synchronous and cheap on the classification path.

Usage:
    from followup.classifier.vip import VIPManager

    vips = VIPManager(store)
    await vips.initialize()
    await vips.add_vip("ceo@example.com", tier=1, name="The CEO")
    hit = vips.lookup("The CEO <CEO@example.com>")  # VIPLookup(tier=1, ...)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import regex

from followup.classifier.models import tier_to_priority
from followup.core.errors import ValidationError
from followup.core.logging import get_logger, truncate_pii
from followup.db.store import VIPContact

if TYPE_CHECKING:
    from followup.classifier.models import Priority, VIPTier
    from followup.config_schema import VIPConfig
    from followup.db.store import DatabaseStore

logger = get_logger(__name__)

# Default reply-by window per tier when a contact has no sla_hours
TIER_SLA_HOURS: dict[int, float] = {1: 4, 2: 24, 3: 48}

_ANGLE_ADDRESS = regex.compile(r"<(.+?)>")


def normalize_email(email: str | None) -> str:
    """Reduce ``"Name <a@b.com>"`` to ``"a@b.com"``, lowercased."""
    if not email:
        return ""
    match = _ANGLE_ADDRESS.search(email, timeout=0.5)
    clean = match.group(1) if match else email
    return clean.strip().lower()


@dataclass(frozen=True, slots=True)
class VIPLookup:
    """Result of a VIP lookup.

    Attributes:
        tier: 1 (highest) to 3
        contact: The matching registry entry
        domain_match: True if matched through a ``*@domain`` entry
    """

    tier: VIPTier
    contact: VIPContact
    domain_match: bool = False
    is_vip: bool = True

    @property
    def priority(self) -> Priority:
        return tier_to_priority(self.tier)

    @property
    def sla_hours(self) -> float:
        return self.contact.sla_hours or TIER_SLA_HOURS[self.tier]


class VIPManager:
    """VIP registry backed by the database store."""

    def __init__(self, store: DatabaseStore):
        self._store = store
        self._index: dict[str, VIPContact] = {}

    async def initialize(self) -> None:
        """Load all VIP contacts into the in-memory index."""
        contacts = await self._store.list_vips()
        self._index = {c.email: c for c in contacts}
        logger.info("vips_loaded", count=len(self._index))

    async def seed_from_config(self, vips: list[VIPConfig]) -> int:
        """Add config-declared VIPs that aren't in the registry yet.

        Returns:
            Number of contacts added
        """
        added = 0
        for vip in vips:
            if normalize_email(vip.email) in self._index:
                continue
            await self.add_vip(
                vip.email,
                tier=vip.tier,
                name=vip.name,
                auto_draft=vip.auto_draft,
                sla_hours=vip.sla_hours,
            )
            added += 1
        if added:
            logger.info("vips_seeded", added=added)
        return added

    def lookup(self, sender: str | None) -> VIPLookup | None:
        """Find the VIP tier for a sender, or None if not a VIP."""
        address = normalize_email(sender)
        if not address:
            return None

        contact = self._index.get(address)
        if contact is not None:
            return VIPLookup(tier=contact.tier, contact=contact)

        if "@" in address:
            domain = address.rsplit("@", 1)[1]
            contact = self._index.get(f"*@{domain}")
            if contact is not None:
                return VIPLookup(tier=contact.tier, contact=contact, domain_match=True)

        return None

    async def add_vip(
        self,
        email: str,
        tier: int,
        name: str = "",
        auto_draft: bool = False,
        sla_hours: float | None = None,
        notes: str | None = None,
    ) -> bool:
        """Add or update a VIP. Repeating the same call changes nothing.

        Returns:
            True if the contact is new, False if an existing entry was updated

        Raises:
            ValidationError: Bad address or tier
        """
        address = normalize_email(email)
        if "@" not in address:
            raise ValidationError(f"VIP address '{email}' must contain '@'")
        if tier not in TIER_SLA_HOURS:
            raise ValidationError(f"Invalid VIP tier {tier}; must be 1, 2 or 3")

        existing = self._index.get(address)
        contact = VIPContact(
            email=address,
            tier=tier,
            name=name or (existing.name if existing else ""),
            auto_draft=auto_draft,
            sla_hours=sla_hours,
            notes=notes,
            added_at=existing.added_at if existing else datetime.now(UTC),
        )
        created = await self._store.upsert_vip(contact)
        self._index[address] = contact

        logger.info(
            "vip_added" if created else "vip_updated",
            email=truncate_pii(address),
            tier=tier,
        )
        return created

    async def remove_vip(self, email: str) -> bool:
        """Remove a VIP. Removing an unknown address is a no-op returning False."""
        address = normalize_email(email)
        removed = await self._store.delete_vip(address)
        self._index.pop(address, None)
        if removed:
            logger.info("vip_removed", email=truncate_pii(address))
        return removed

    def list_vips(self, tier: int | None = None) -> list[VIPContact]:
        contacts = sorted(self._index.values(), key=lambda c: (c.tier, c.email))
        if tier is not None:
            contacts = [c for c in contacts if c.tier == tier]
        return contacts

    def calculate_sla_deadline(self, sender: str, received_at: datetime) -> datetime | None:
        """Reply-by time for a VIP sender (received + the contact's SLA hours)."""
        hit = self.lookup(sender)
        if hit is None:
            return None
        return received_at + timedelta(hours=hit.sla_hours)

    def get_statistics(self) -> dict[str, object]:
        by_tier = {tier: 0 for tier in TIER_SLA_HOURS}
        sla_total = 0.0
        for contact in self._index.values():
            by_tier[contact.tier] = by_tier.get(contact.tier, 0) + 1
            sla_total += contact.sla_hours or TIER_SLA_HOURS.get(contact.tier, 24)

        count = len(self._index)
        return {
            "total": count,
            "by_tier": by_tier,
            "domain_entries": sum(1 for key in self._index if key.startswith("*@")),
            "average_sla_hours": round(sla_total / count, 2) if count else 0.0,
        }
