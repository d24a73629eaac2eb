from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from sqlalchemy import Table

from backoffice.crm.models import (
    Account,
    Case,
    CaseStatus,
    CaseType,
    Contact,
    Donation,
    Event,
    Expense,
    Grant,
    Program,
    Task,
    Volunteer,
)
from backoffice.platform.security.scope import ScopeDimension
from backoffice.reporting.errors import UnknownEntityError


class FieldType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    ENUM = "enum"


@dataclass(frozen=True, slots=True)
class ColumnRef:
    """A column on the entity's base table (``join`` is None) or on a joined table."""

    column: str
    join: str | None = None


@dataclass(frozen=True, slots=True)
class JoinDefinition:
    key: str
    table: Table
    remote_column: str
    local: ColumnRef


@dataclass(frozen=True, slots=True)
class FieldDefinition:
    id: str
    label: str
    type: FieldType
    entity: str
    source: ColumnRef
    filterable: bool = True
    sortable: bool = True
    aggregatable: bool = False
    options: tuple[str, ...] = ()
    is_uuid: bool = False
    is_timestamp: bool = False

    def as_public(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "type": self.type.value,
            "entity": self.entity,
            "filterable": self.filterable,
            "sortable": self.sortable,
            "aggregatable": self.aggregatable,
        }
        if self.options:
            payload["options"] = list(self.options)
        return payload


@dataclass(frozen=True, slots=True)
class EntityDefinition:
    name: str
    label: str
    table: Table
    fields: tuple[FieldDefinition, ...]
    joins: Mapping[str, JoinDefinition] = field(default_factory=dict)
    scope_columns: Mapping[ScopeDimension, ColumnRef] = field(default_factory=dict)
    primary_key: str = "id"

    def field_map(self) -> dict[str, FieldDefinition]:
        return {item.id: item for item in self.fields}


class FieldCatalog:
    """Immutable registry of reportable entities and their fields."""

    def __init__(self, entities: Iterable[EntityDefinition]) -> None:
        registry: dict[str, EntityDefinition] = {}
        fields: dict[str, Mapping[str, FieldDefinition]] = {}
        for entity in entities:
            _check_entity(entity)
            registry[entity.name] = entity
            fields[entity.name] = MappingProxyType(entity.field_map())
        self._entities: Mapping[str, EntityDefinition] = MappingProxyType(registry)
        self._fields: Mapping[str, Mapping[str, FieldDefinition]] = MappingProxyType(fields)

    def entities(self) -> list[EntityDefinition]:
        return list(self._entities.values())

    def get_entity(self, entity: str | None) -> EntityDefinition:
        if entity is None or entity not in self._entities:
            raise UnknownEntityError(entity)
        return self._entities[entity]

    def get_fields_for_entity(self, entity: str | None) -> list[FieldDefinition]:
        return list(self.get_entity(entity).fields)

    def get_field(self, entity: str, field_id: str) -> FieldDefinition | None:
        return self._fields.get(entity, {}).get(field_id)


def _check_entity(entity: EntityDefinition) -> None:
    refs = [item.source for item in entity.fields] + list(entity.scope_columns.values())
    refs += [join.local for join in entity.joins.values()]
    for ref in refs:
        if ref.join is None:
            table = entity.table
        elif ref.join in entity.joins:
            table = entity.joins[ref.join].table
        else:
            raise ValueError(f"{entity.name}: unknown join '{ref.join}'")
        if ref.column not in table.c:
            raise ValueError(f"{entity.name}: column '{ref.column}' missing on {table.name}")


def _fields(entity: str, entries: Iterable[tuple[Any, ...]]) -> tuple[FieldDefinition, ...]:
    built: list[FieldDefinition] = []
    for entry in entries:
        field_id, label, field_type = entry[:3]
        options: dict[str, Any] = dict(entry[3]) if len(entry) > 3 else {}
        column = options.pop("column", field_id)
        join = options.pop("join", None)
        if field_type == FieldType.NUMBER:
            options.setdefault("aggregatable", True)
        built.append(
            FieldDefinition(
                id=field_id,
                label=label,
                type=field_type,
                entity=entity,
                source=ColumnRef(column=column, join=join),
                **options,
            )
        )
    return tuple(built)


S, N, D, B, E = FieldType.STRING, FieldType.NUMBER, FieldType.DATE, FieldType.BOOLEAN, FieldType.ENUM

_UUID = {"is_uuid": True}
_TIMESTAMP = {"is_timestamp": True}
_LONG_TEXT = {"sortable": False}

ACCOUNT_TYPES = ("individual", "organization")
CASE_PRIORITIES = ("low", "medium", "high", "urgent")
CASE_STATUS_TYPES = ("intake", "active", "review", "closed", "cancelled")
CONTACT_METHODS = ("email", "phone", "mail", "text")
PAYMENT_METHODS = ("cash", "check", "credit_card", "debit_card", "bank_transfer", "paypal", "stock", "in_kind", "other")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded", "cancelled")
EVENT_TYPES = ("fundraiser", "community", "training", "meeting", "volunteer", "social", "other")
EVENT_STATUSES = ("planned", "active", "completed", "cancelled", "postponed")
VOLUNTEER_STATUSES = ("active", "inactive", "pending", "suspended")
TASK_STATUSES = ("not_started", "in_progress", "waiting", "completed", "deferred", "cancelled")
TASK_PRIORITIES = ("low", "normal", "high", "urgent")
EXPENSE_STATUSES = ("pending", "approved", "rejected", "paid")
GRANT_STATUSES = ("draft", "submitted", "under_review", "awarded", "rejected", "closed")
PROGRAM_STATUSES = ("planning", "active", "completed", "suspended")

accounts_table = Account.__table__
contacts_table = Contact.__table__


def _account_join(local: ColumnRef) -> JoinDefinition:
    return JoinDefinition(key="account", table=accounts_table, remote_column="id", local=local)


def _contact_join(local: ColumnRef) -> JoinDefinition:
    return JoinDefinition(key="contact", table=contacts_table, remote_column="id", local=local)


def _created_by_only() -> dict[ScopeDimension, ColumnRef]:
    return {ScopeDimension.CREATED_BY: ColumnRef("created_by")}


ENTITIES: tuple[EntityDefinition, ...] = (
    EntityDefinition(
        name="cases",
        label="Cases",
        table=Case.__table__,
        fields=_fields(
            "cases",
            [
                ("id", "Case ID", S, _UUID),
                ("case_number", "Case Number", S),
                ("title", "Title", S),
                ("priority", "Priority", E, {"options": CASE_PRIORITIES}),
                ("outcome", "Outcome", S, _LONG_TEXT),
                ("status_name", "Status", S, {"column": "name", "join": "status"}),
                ("status_type", "Status Type", E, {"column": "status_type", "join": "status", "options": CASE_STATUS_TYPES}),
                ("case_type_name", "Case Type", S, {"column": "name", "join": "case_type"}),
                ("account_name", "Account", S, {"join": "account"}),
                ("is_urgent", "Urgent", B),
                ("due_date", "Due Date", D),
                ("opened_date", "Opened Date", D),
                ("closed_date", "Closed Date", D),
                ("created_at", "Created Date", D, _TIMESTAMP),
                ("service_outcome", "Service/Event Outcome", S, _LONG_TEXT),
            ],
        ),
        joins={
            "status": JoinDefinition(key="status", table=CaseStatus.__table__, remote_column="id", local=ColumnRef("status_id")),
            "case_type": JoinDefinition(key="case_type", table=CaseType.__table__, remote_column="id", local=ColumnRef("case_type_id")),
            "account": _account_join(ColumnRef("account_id")),
        },
        scope_columns={
            ScopeDimension.ACCOUNT: ColumnRef("account_id"),
            ScopeDimension.CONTACT: ColumnRef("contact_id"),
            ScopeDimension.CREATED_BY: ColumnRef("created_by"),
            ScopeDimension.ACCOUNT_TYPE: ColumnRef("account_type", join="account"),
        },
    ),
    EntityDefinition(
        name="accounts",
        label="Accounts",
        table=accounts_table,
        fields=_fields(
            "accounts",
            [
                ("id", "Account ID", S, _UUID),
                ("account_name", "Account Name", S),
                ("account_type", "Type", E, {"options": ACCOUNT_TYPES}),
                ("category", "Category", S),
                ("website", "Website", S),
                ("phone", "Phone", S),
                ("email", "Email", S),
                ("is_active", "Active", B),
                ("created_at", "Created Date", D, _TIMESTAMP),
                ("updated_at", "Updated Date", D, _TIMESTAMP),
            ],
        ),
        scope_columns={
            ScopeDimension.ACCOUNT: ColumnRef("id"),
            ScopeDimension.CREATED_BY: ColumnRef("created_by"),
            ScopeDimension.ACCOUNT_TYPE: ColumnRef("account_type"),
        },
    ),
    EntityDefinition(
        name="contacts",
        label="Contacts",
        table=contacts_table,
        fields=_fields(
            "contacts",
            [
                ("id", "Contact ID", S, _UUID),
                ("first_name", "First Name", S),
                ("last_name", "Last Name", S),
                ("email", "Email", S),
                ("phone", "Phone", S),
                ("mobile_phone", "Mobile Phone", S),
                ("job_title", "Job Title", S),
                ("department", "Department", S),
                ("preferred_contact_method", "Preferred Contact Method", E, {"options": CONTACT_METHODS}),
                ("account_name", "Account", S, {"join": "account"}),
                ("account_type", "Account Type", E, {"join": "account", "options": ACCOUNT_TYPES}),
                ("is_active", "Active", B),
                ("created_at", "Created Date", D, _TIMESTAMP),
                ("updated_at", "Updated Date", D, _TIMESTAMP),
            ],
        ),
        joins={"account": _account_join(ColumnRef("account_id"))},
        scope_columns={
            ScopeDimension.ACCOUNT: ColumnRef("account_id"),
            ScopeDimension.CONTACT: ColumnRef("id"),
            ScopeDimension.CREATED_BY: ColumnRef("created_by"),
            ScopeDimension.ACCOUNT_TYPE: ColumnRef("account_type", join="account"),
        },
    ),
    EntityDefinition(
        name="donations",
        label="Donations",
        table=Donation.__table__,
        fields=_fields(
            "donations",
            [
                ("id", "Donation ID", S, _UUID),
                ("donation_number", "Donation Number", S),
                ("amount", "Amount", N),
                ("payment_method", "Payment Method", E, {"options": PAYMENT_METHODS}),
                ("payment_status", "Payment Status", E, {"options": PAYMENT_STATUSES}),
                ("campaign_name", "Campaign", S),
                ("designation", "Designation", S),
                ("is_recurring", "Recurring", B),
                ("donation_date", "Donation Date", D),
                ("donor_first_name", "Donor First Name", S, {"column": "first_name", "join": "contact"}),
                ("donor_last_name", "Donor Last Name", S, {"column": "last_name", "join": "contact"}),
                ("account_name", "Account", S, {"join": "account"}),
                ("created_at", "Created Date", D, _TIMESTAMP),
            ],
        ),
        joins={
            "account": _account_join(ColumnRef("account_id")),
            "contact": _contact_join(ColumnRef("contact_id")),
        },
        scope_columns={
            ScopeDimension.ACCOUNT: ColumnRef("account_id"),
            ScopeDimension.CONTACT: ColumnRef("contact_id"),
            ScopeDimension.CREATED_BY: ColumnRef("created_by"),
            ScopeDimension.ACCOUNT_TYPE: ColumnRef("account_type", join="account"),
        },
    ),
    EntityDefinition(
        name="events",
        label="Events",
        table=Event.__table__,
        fields=_fields(
            "events",
            [
                ("id", "Event ID", S, _UUID),
                ("name", "Event Name", S),
                ("event_type", "Type", E, {"options": EVENT_TYPES}),
                ("status", "Status", E, {"options": EVENT_STATUSES}),
                ("location_name", "Location", S),
                ("capacity", "Capacity", N),
                ("start_date", "Start Date", D, _TIMESTAMP),
                ("end_date", "End Date", D, _TIMESTAMP),
                ("created_at", "Created Date", D, _TIMESTAMP),
            ],
        ),
        scope_columns=_created_by_only(),
    ),
    EntityDefinition(
        name="volunteers",
        label="Volunteers",
        table=Volunteer.__table__,
        fields=_fields(
            "volunteers",
            [
                ("id", "Volunteer ID", S, _UUID),
                ("first_name", "First Name", S, {"join": "contact"}),
                ("last_name", "Last Name", S, {"join": "contact"}),
                ("email", "Email", S, {"join": "contact"}),
                ("phone", "Phone", S, {"join": "contact"}),
                ("volunteer_status", "Status", E, {"options": VOLUNTEER_STATUSES}),
                ("skills", "Skills", S, _LONG_TEXT),
                ("availability", "Availability", S),
                ("total_hours", "Total Hours", N),
                ("account_name", "Account", S, {"join": "account"}),
                ("created_at", "Created Date", D, _TIMESTAMP),
            ],
        ),
        joins={
            "contact": _contact_join(ColumnRef("contact_id")),
            "account": _account_join(ColumnRef("account_id", join="contact")),
        },
        scope_columns={
            ScopeDimension.ACCOUNT: ColumnRef("account_id", join="contact"),
            ScopeDimension.CONTACT: ColumnRef("contact_id"),
            ScopeDimension.CREATED_BY: ColumnRef("created_by"),
            ScopeDimension.ACCOUNT_TYPE: ColumnRef("account_type", join="account"),
        },
    ),
    EntityDefinition(
        name="tasks",
        label="Tasks",
        table=Task.__table__,
        fields=_fields(
            "tasks",
            [
                ("id", "Task ID", S, _UUID),
                ("subject", "Subject", S),
                ("status", "Status", E, {"options": TASK_STATUSES}),
                ("priority", "Priority", E, {"options": TASK_PRIORITIES}),
                ("due_date", "Due Date", D),
                ("completed_date", "Completed Date", D, _TIMESTAMP),
                ("related_to_type", "Related To", S),
                ("created_at", "Created Date", D, _TIMESTAMP),
            ],
        ),
        scope_columns=_created_by_only(),
    ),
    EntityDefinition(
        name="expenses",
        label="Expenses",
        table=Expense.__table__,
        fields=_fields(
            "expenses",
            [
                ("id", "Expense ID", S, _UUID),
                ("amount", "Amount", N),
                ("category", "Category", S),
                ("description", "Description", S, _LONG_TEXT),
                ("expense_date", "Expense Date", D),
                ("payment_method", "Payment Method", S),
                ("status", "Status", E, {"options": EXPENSE_STATUSES}),
                ("created_at", "Created Date", D, _TIMESTAMP),
            ],
        ),
        scope_columns=_created_by_only(),
    ),
    EntityDefinition(
        name="grants",
        label="Grants",
        table=Grant.__table__,
        fields=_fields(
            "grants",
            [
                ("id", "Grant ID", S, _UUID),
                ("name", "Grant Name", S),
                ("funder", "Funder", S),
                ("amount", "Amount", N),
                ("status", "Status", E, {"options": GRANT_STATUSES}),
                ("award_date", "Award Date", D),
                ("expiry_date", "Expiry Date", D),
                ("created_at", "Created Date", D, _TIMESTAMP),
            ],
        ),
        scope_columns=_created_by_only(),
    ),
    EntityDefinition(
        name="programs",
        label="Programs",
        table=Program.__table__,
        fields=_fields(
            "programs",
            [
                ("id", "Program ID", S, _UUID),
                ("name", "Program Name", S),
                ("description", "Description", S, _LONG_TEXT),
                ("status", "Status", E, {"options": PROGRAM_STATUSES}),
                ("start_date", "Start Date", D),
                ("end_date", "End Date", D),
                ("budget", "Budget", N),
                ("created_at", "Created Date", D, _TIMESTAMP),
            ],
        ),
        scope_columns=_created_by_only(),
    ),
)


def build_field_catalog() -> FieldCatalog:
    return FieldCatalog(ENTITIES)
