"""Per-entity sync strategies and cross-system link rules.

EntitySyncSpec parametrizes the refresh path of the orchestrator: which
remote collection to page through, how to map a raw record into a mirror,
and which fields are tracked for change history. One orchestrator serves
every entity type through these specs.

LinkRule parametrizes the link path: which mirrored source records are
pushed into which target system, how match criteria and target fields are
derived, and which feature flag gates the automation.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.recordsync.records.schemas import CanonicalRecord, EntityType, MatchCriteria
from src.recordsync.sources.adapter import RemoteSource, fetch_all_pages
from src.recordsync.sync.field_mapping import (
    CRM_COMPANY_MAP,
    CRM_CONTACT_MAP,
    CRM_DEAL_MAP,
    PM_PROJECT_MAP,
    PM_USER_MAP,
    PM_VENDOR_MAP,
    criteria_from_company,
    criteria_from_contact,
    map_remote_record,
    vendor_fields_from_company,
    vendor_fields_from_contact,
)

# Automation config key gating CRM -> vendor linking.
CRM_VENDOR_LINK_CONFIG_KEY = "crm_vendor_auto_link"


class EntitySyncSpec:
    """Refresh strategy for one entity type from one remote collection.

    Args:
        entity_type: Entity type of the mirrors written.
        source: Remote collection the records come from.
        property_map: Canonical field -> remote property path.
        tracked_fields: Fields compared for change history; defaults to the map's keys.
        id_key: Key of the remote identifier in raw records.
        properties_key: Key of the property bag in raw records, None for flat records.
    """

    def __init__(
        self,
        entity_type: EntityType,
        source: RemoteSource,
        property_map: dict[str, str],
        tracked_fields: tuple[str, ...] | None = None,
        id_key: str = "id",
        properties_key: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.source = source
        self.property_map = property_map
        self.tracked_fields = tracked_fields if tracked_fields is not None else tuple(property_map)
        self.id_key = id_key
        self.properties_key = properties_key

    @property
    def source_system(self) -> str:
        return self.source.system

    async def fetch_pages(self) -> list[dict[str, Any]]:
        """Fetch every raw record from the remote collection."""
        return await fetch_all_pages(self.source)

    async def fetch_one(self, remote_id: str) -> dict[str, Any] | None:
        """Fetch a single raw record, None if the remote does not have it."""
        return await self.source.get_record(remote_id)

    def remote_id_of(self, raw: dict[str, Any]) -> str:
        return str(raw.get(self.id_key, "?"))

    def map_remote(self, raw: dict[str, Any]) -> CanonicalRecord:
        return map_remote_record(
            raw,
            self.entity_type,
            self.source_system,
            self.property_map,
            id_key=self.id_key,
            properties_key=self.properties_key,
        )


@dataclass(frozen=True)
class LinkRule:
    """Cross-system link rule: source mirrors of one type -> records in a target system.

    Attributes:
        name: Rule name, also the prefix of its audit actions.
        source_system: System owning the source records.
        source_entity_type: Entity type of the source mirrors.
        target_system: System the records are linked into.
        target_entity_type: Entity type of the target mirrors.
        config_key: Automation config key enabling the rule (disabled when absent).
        build_criteria: Source fields -> match criteria.
        build_target_fields: Source fields -> fields proposed for the target record.
        required_fields: Target fields that must be present to create a record.
    """

    name: str
    source_system: str
    source_entity_type: EntityType
    target_system: str
    target_entity_type: EntityType
    config_key: str
    build_criteria: Callable[[dict[str, Any]], MatchCriteria]
    build_target_fields: Callable[[dict[str, Any]], dict[str, Any]]
    required_fields: tuple[str, ...] = field(default=("name",))


# ── Defaults ────────────────────────────────────────────────────────────────


def crm_specs(
    companies: RemoteSource, contacts: RemoteSource, deals: RemoteSource
) -> list[EntitySyncSpec]:
    """Refresh specs for CRM companies, contacts and deals (property-bag records)."""
    return [
        EntitySyncSpec(EntityType.COMPANY, companies, CRM_COMPANY_MAP, properties_key="properties"),
        EntitySyncSpec(EntityType.CONTACT, contacts, CRM_CONTACT_MAP, properties_key="properties"),
        EntitySyncSpec(EntityType.DEAL, deals, CRM_DEAL_MAP, properties_key="properties"),
    ]


def project_management_specs(
    vendors: RemoteSource, projects: RemoteSource, users: RemoteSource
) -> list[EntitySyncSpec]:
    """Refresh specs for project-management vendors, projects and users (flat records)."""
    return [
        EntitySyncSpec(EntityType.VENDOR, vendors, PM_VENDOR_MAP),
        EntitySyncSpec(EntityType.PROJECT, projects, PM_PROJECT_MAP),
        EntitySyncSpec(EntityType.USER, users, PM_USER_MAP),
    ]


COMPANY_TO_VENDOR = LinkRule(
    name="crm_company_vendor",
    source_system="hubspot",
    source_entity_type=EntityType.COMPANY,
    target_system="procore",
    target_entity_type=EntityType.VENDOR,
    config_key=CRM_VENDOR_LINK_CONFIG_KEY,
    build_criteria=criteria_from_company,
    build_target_fields=vendor_fields_from_company,
)

CONTACT_TO_VENDOR = LinkRule(
    name="crm_contact_vendor",
    source_system="hubspot",
    source_entity_type=EntityType.CONTACT,
    target_system="procore",
    target_entity_type=EntityType.VENDOR,
    config_key=CRM_VENDOR_LINK_CONFIG_KEY,
    build_criteria=criteria_from_contact,
    build_target_fields=vendor_fields_from_contact,
)
