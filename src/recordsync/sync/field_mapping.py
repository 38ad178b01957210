"""Remote property maps and record conversion for mirrored entity types.

Defines:
- Property maps: canonical field name -> remote property path (dotted paths
  reach into nested objects, e.g. ``company.name``). The keys of each map
  are also the tracked fields for change detection.
- map_remote_record(): Converts a raw remote record into a CanonicalRecord.
- Link field builders: derive target-system fields and match criteria from
  a mirrored source record (CRM company/contact -> project-management vendor).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.recordsync.errors import RecordValidationError
from src.recordsync.matching.normalize import extract_domain
from src.recordsync.records.schemas import CanonicalRecord, EntityType, MatchCriteria


# ── CRM (HubSpot) Property Maps ────────────────────────────────────────────
# HubSpot objects carry their values under "properties".

CRM_COMPANY_MAP: dict[str, str] = {
    "name": "name",
    "domain": "domain",
    "phone": "phone",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip": "zip",
    "industry": "industry",
    "owner_id": "hubspot_owner_id",
}

CRM_CONTACT_MAP: dict[str, str] = {
    "first_name": "firstname",
    "last_name": "lastname",
    "email": "email",
    "phone": "phone",
    "company": "company",
    "job_title": "jobtitle",
    "lifecycle_stage": "lifecyclestage",
    "owner_id": "hubspot_owner_id",
}

CRM_DEAL_MAP: dict[str, str] = {
    "deal_name": "dealname",
    "amount": "amount",
    "deal_stage": "dealstage",
    "pipeline": "pipeline",
    "close_date": "closedate",
    "owner_id": "hubspot_owner_id",
}


# ── Project Management (Procore) Property Maps ─────────────────────────────
# Procore records are flat JSON objects.

PM_VENDOR_MAP: dict[str, str] = {
    "name": "name",
    "abbreviated_name": "abbreviated_name",
    "address": "address",
    "city": "city",
    "state_code": "state_code",
    "zip": "zip",
    "email_address": "email_address",
    "business_phone": "business_phone",
    "mobile_phone": "mobile_phone",
    "website": "website",
    "legal_name": "legal_name",
    "license_number": "license_number",
    "is_active": "is_active",
    "trade_name": "trade_name",
    "labor_union": "labor_union",
}

PM_PROJECT_MAP: dict[str, str] = {
    "name": "name",
    "display_name": "display_name",
    "project_number": "project_number",
    "address": "address",
    "city": "city",
    "state_code": "state_code",
    "zip": "zip",
    "phone": "phone",
    "active": "active",
    "stage": "stage",
    "project_stage_name": "project_stage.name",
    "start_date": "start_date",
    "completion_date": "completion_date",
    "estimated_value": "estimated_value",
    "company_name": "company.name",
}

PM_USER_MAP: dict[str, str] = {
    "name": "name",
    "first_name": "first_name",
    "last_name": "last_name",
    "email_address": "email_address",
    "job_title": "job_title",
    "business_phone": "business_phone",
    "mobile_phone": "mobile_phone",
    "is_active": "is_active",
    "is_employee": "is_employee",
    "vendor_name": "vendor.name",
}


# ── Conversion ─────────────────────────────────────────────────────────────


def _lookup(data: dict[str, Any], path: str) -> Any:
    value: Any = data
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def extract_fields(properties: dict[str, Any], property_map: dict[str, str]) -> dict[str, Any]:
    """Pull canonical fields out of remote properties. Empty strings become None."""
    fields: dict[str, Any] = {}
    for field, path in property_map.items():
        value = _lookup(properties, path)
        if value == "" or isinstance(value, (dict, list)):
            value = None
        fields[field] = value
    return fields


def map_remote_record(
    raw: dict[str, Any],
    entity_type: EntityType,
    source_system: str,
    property_map: dict[str, str],
    id_key: str = "id",
    properties_key: str | None = None,
) -> CanonicalRecord:
    """Convert a raw remote record into a CanonicalRecord.

    Args:
        raw: Record as returned by the remote.
        entity_type: Entity type of the mirror.
        source_system: System the record comes from.
        property_map: Canonical field -> remote property path.
        id_key: Key of the remote identifier in ``raw``.
        properties_key: Key holding the property bag, None when ``raw`` is flat.

    Raises:
        RecordValidationError: If the record has no identifier.
    """
    remote_id = raw.get(id_key)
    if remote_id is None or remote_id == "":
        raise RecordValidationError(
            id_key, f"{source_system} {entity_type.value} record has no '{id_key}'"
        )
    properties = (raw.get(properties_key) or {}) if properties_key else raw
    return CanonicalRecord(
        remote_id=str(remote_id),
        entity_type=entity_type,
        source_system=source_system,
        fields=extract_fields(properties, property_map),
        raw_properties=properties,
        last_synced_at=datetime.now(timezone.utc),
    )


# ── Link Field Builders (CRM -> vendor) ────────────────────────────────────


def vendor_fields_from_company(fields: dict[str, Any]) -> dict[str, Any]:
    """Vendor fields a CRM company can supply. Websites gain an https:// scheme."""
    vendor: dict[str, Any] = {}
    if fields.get("name"):
        vendor["name"] = fields["name"]
    domain = fields.get("domain")
    if domain:
        vendor["website"] = domain if str(domain).startswith("http") else f"https://{domain}"
    if fields.get("phone"):
        vendor["business_phone"] = fields["phone"]
    if fields.get("address"):
        vendor["address"] = fields["address"]
    if fields.get("city"):
        vendor["city"] = fields["city"]
    if fields.get("state"):
        vendor["state_code"] = fields["state"]
    if fields.get("zip"):
        vendor["zip"] = fields["zip"]
    return vendor


def vendor_fields_from_contact(fields: dict[str, Any]) -> dict[str, Any]:
    """Vendor fields a CRM contact can supply. Name is the company, else the person."""
    vendor: dict[str, Any] = {}
    person = " ".join(p for p in (fields.get("first_name"), fields.get("last_name")) if p)
    if fields.get("company"):
        vendor["name"] = fields["company"]
    elif person:
        vendor["name"] = person
    if fields.get("email"):
        vendor["email_address"] = fields["email"]
    if fields.get("phone"):
        vendor["business_phone"] = fields["phone"]
    return vendor


def criteria_from_company(fields: dict[str, Any]) -> MatchCriteria:
    return MatchCriteria(
        company_name=fields.get("name"),
        domain=extract_domain(fields.get("domain")) or None,
    )


def criteria_from_contact(fields: dict[str, Any]) -> MatchCriteria:
    return MatchCriteria(
        email=fields.get("email"),
        domain=extract_domain(fields.get("email")) or None,
        company_name=fields.get("company"),
        first_name=fields.get("first_name"),
        last_name=fields.get("last_name"),
    )
