"""Default row and export handlers for the audit entity types."""

from __future__ import annotations

import ipaddress
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import RowError
from ..db import session_scope
from ..models.record import ImportedRecord
from .registry import HandlerRegistry, JobKind

LOGGER = structlog.get_logger(__name__)

INVENTORY = "inventory"
NETWORK_DEVICES = "network_devices"
VULNERABILITIES = "vulnerabilities"
AUDIT_ENTITIES = (INVENTORY, NETWORK_DEVICES, VULNERABILITIES)

SEVERITIES = ("low", "medium", "high", "critical")


def _first(row: dict[str, Any], *aliases: str, default: Any = None) -> Any:
    """Return the first non-blank value among ``aliases``."""

    for alias in aliases:
        value = row.get(alias)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        return value
    return default


def _text(value: Any) -> str | None:
    return None if value is None else str(value)


def inventory_payload(row: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    payload = {
        "category": _text(_first(row, "category", "Category", default="other")),
        "brand": _text(_first(row, "brand", "Brand", "Marque")),
        "model": _text(_first(row, "model", "Model", "Modèle")),
        "serial_number": _text(
            _first(row, "serial_number", "Serial Number", "Numéro de série")
        ),
        "asset_tag": _text(_first(row, "asset_tag", "Asset Tag", "Tag Asset")),
        "location": _text(_first(row, "location", "Location", "Localisation")),
        "status": _text(_first(row, "status", "Status", "Statut", default="active")),
    }
    natural_key = payload["serial_number"] or payload["asset_tag"]
    if not natural_key:
        raise RowError("Inventory row requires a serial number or asset tag")
    return natural_key, payload


def network_device_payload(row: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    raw_ip = _first(row, "ip_address", "IP", "Adresse IP")
    if raw_ip is None:
        raise RowError("Network device row requires an IP address")
    try:
        ip_address = str(ipaddress.ip_address(str(raw_ip)))
    except ValueError as exc:
        raise RowError(f"Invalid IP address: {raw_ip}") from exc
    payload = {
        "ip_address": ip_address,
        "hostname": _text(_first(row, "hostname", "Hostname", "Nom d'hôte")),
        "device_type": _text(_first(row, "device_type", "Type", default="unknown")),
        "manufacturer": _text(_first(row, "manufacturer", "Manufacturer", "Fabricant")),
        "status": _text(_first(row, "status", "Status", default="unknown")),
    }
    return ip_address, payload


def vulnerability_payload(row: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    title = _text(_first(row, "title", "Title", "Titre"))
    if not title:
        raise RowError("Vulnerability row requires a title")

    severity = str(_first(row, "severity", "Severity", "Sévérité", default="medium")).lower()
    if severity not in SEVERITIES:
        raise RowError(f"Invalid severity: {severity}")

    raw_score = _first(row, "cvss_score", "CVSS", default=0)
    try:
        cvss_score = float(raw_score)
    except (TypeError, ValueError) as exc:
        raise RowError(f"Invalid CVSS score: {raw_score}") from exc
    if not 0 <= cvss_score <= 10:
        raise RowError(f"CVSS score out of range: {cvss_score}")

    payload = {
        "vulnerability_id": _text(_first(row, "vulnerability_id", "CVE")),
        "title": title,
        "description": _text(_first(row, "description", "Description")),
        "severity": severity,
        "cvss_score": cvss_score,
        "category": _text(_first(row, "category", "Category", "Catégorie", default="other")),
        "status": _text(_first(row, "status", "Status", default="open")),
    }
    return payload["vulnerability_id"] or title, payload


_PAYLOAD_BUILDERS = {
    INVENTORY: inventory_payload,
    NETWORK_DEVICES: network_device_payload,
    VULNERABILITIES: vulnerability_payload,
}


def _matches(payload: dict[str, Any], filters: dict[str, Any]) -> bool:
    for field, expected in filters.items():
        if expected in (None, "", []):
            continue
        actual = payload.get(field)
        if isinstance(expected, (list, tuple, set)):
            if str(actual) not in {str(item) for item in expected}:
                return False
        elif str(actual) != str(expected):
            return False
    return True


class RecordHandlers:
    """Persists imported rows as :class:`ImportedRecord` and reads them back."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def importer(self, entity: str):
        build = _PAYLOAD_BUILDERS[entity]

        def handle_row(organization_id: int, row: dict[str, Any]) -> None:
            natural_key, payload = build(row)
            try:
                with session_scope(self.session_factory) as session:
                    session.add(
                        ImportedRecord(
                            organization_id=organization_id,
                            entity=entity,
                            natural_key=natural_key,
                            payload=payload,
                        )
                    )
            except IntegrityError as exc:
                raise RowError(
                    f"Duplicate {entity} record: {natural_key}", {"natural_key": natural_key}
                ) from exc

        handle_row.__name__ = f"import_{entity}"
        return handle_row

    def fetch(
        self, organization_id: int, entity: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as session:
            payloads = session.scalars(
                select(ImportedRecord.payload)
                .where(
                    ImportedRecord.organization_id == organization_id,
                    ImportedRecord.entity == entity,
                )
                .order_by(ImportedRecord.id)
            ).all()
        return [dict(payload) for payload in payloads if _matches(payload, filters or {})]

    def exporter(self, entity: str):
        def export_rows(organization_id: int, filters: dict[str, Any]) -> list[dict[str, Any]]:
            return self.fetch(organization_id, entity, filters)

        export_rows.__name__ = f"export_{entity}"
        return export_rows

    def full_audit(
        self, organization_id: int, filters: dict[str, Any]
    ) -> dict[str, list[dict[str, Any]]]:
        datasets = {
            entity: self.fetch(organization_id, entity, filters.get(entity) or {})
            for entity in AUDIT_ENTITIES
        }
        LOGGER.info(
            "full_audit_collected",
            organization_id=organization_id,
            counts={name: len(rows) for name, rows in datasets.items()},
        )
        return datasets


def default_registry(session_factory: sessionmaker[Session]) -> HandlerRegistry:
    """Return a registry serving every :class:`JobKind` from ``imported_records``."""

    handlers = RecordHandlers(session_factory)
    return HandlerRegistry(
        import_handlers={
            JobKind.IMPORT_INVENTORY: handlers.importer(INVENTORY),
            JobKind.IMPORT_NETWORK_DEVICES: handlers.importer(NETWORK_DEVICES),
            JobKind.IMPORT_VULNERABILITIES: handlers.importer(VULNERABILITIES),
        },
        export_handlers={
            JobKind.EXPORT_INVENTORY: handlers.exporter(INVENTORY),
            JobKind.EXPORT_NETWORK_DEVICES: handlers.exporter(NETWORK_DEVICES),
            JobKind.EXPORT_VULNERABILITIES: handlers.exporter(VULNERABILITIES),
            JobKind.EXPORT_FULL_AUDIT: handlers.full_audit,
        },
    )


__all__ = [
    "AUDIT_ENTITIES",
    "RecordHandlers",
    "SEVERITIES",
    "default_registry",
    "inventory_payload",
    "network_device_payload",
    "vulnerability_payload",
]
