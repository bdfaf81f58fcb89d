"""
Availability rule management.

Owners keep any number of weekly rules; the default one (or else the newest
active one) governs slot computation. Disabling a rule keeps it on record
while taking it out of availability.
"""

from typing import Any

from booking_engine.errors import RuleNotFound
from booking_engine.models.domain.calendar_domain import AvailabilityRule
from booking_engine.repositories.interfaces import AvailabilityRuleStore
from booking_engine.services.calendar.availability_service import resolve_timezone


class AvailabilityRuleService:
    def __init__(self, rule_store: AvailabilityRuleStore):
        self._rules = rule_store

    async def list_rules(
        self, owner_id: str, include_inactive: bool = True
    ) -> list[AvailabilityRule]:
        return await self._rules.list_for_owner(owner_id, include_inactive)

    async def get_rule(self, rule_id: str) -> AvailabilityRule:
        rule = await self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFound()
        return rule

    async def create_rule(
        self, tenant_id: str, owner_id: str, fields: dict[str, Any]
    ) -> AvailabilityRule:
        """
        Store a new rule for an owner.

        Raises:
            InvalidTimezone: the rule's timezone is not a known IANA zone
        """
        rule = AvailabilityRule.model_validate(
            {**fields, "tenant_id": tenant_id, "owner_id": owner_id}
        )
        resolve_timezone(rule.timezone, strict=True)
        return await self._rules.create(rule)

    async def update_rule(self, rule_id: str, changes: dict[str, Any]) -> AvailabilityRule:
        """Apply a partial update. Setting is_default demotes the owner's other default."""
        existing = await self.get_rule(rule_id)
        rule = AvailabilityRule.model_validate({**existing.model_dump(), **changes})
        resolve_timezone(rule.timezone, strict=True)

        updated = await self._rules.update(rule)
        if updated is None:
            # Deleted between read and write
            raise RuleNotFound()
        return updated

    async def deactivate_rule(self, rule_id: str) -> AvailabilityRule:
        return await self.update_rule(rule_id, {"active": False})

    async def delete_rule(self, rule_id: str) -> None:
        if not await self._rules.delete(rule_id):
            raise RuleNotFound()
