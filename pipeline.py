"""
Deal pipeline: prospective and active LIHTC deals with their financing
processes, checklists and contacts.

Every mutation loads the deal, applies the change, stamps date_updated and
writes the whole document back (last write wins). A process-local lock
keeps two request threads from interleaving a read-modify-write.

Lifecycle:
    prospective -> active | dead
    active      -> closed | dead
    dead        -> prospective
    closed      (terminal)
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import models

logger = logging.getLogger(__name__)

_lock = threading.Lock()


# =============================================================================
# ENUMS
# =============================================================================

class DealStatus(str, Enum):
    PROSPECTIVE = "prospective"
    ACTIVE = "active"
    CLOSED = "closed"
    DEAD = "dead"


class ProcessType(str, Enum):
    LIHTC = "lihtc"
    BONDS = "bonds"
    CAPITAL = "capital"
    DUE_DILIGENCE = "dueDiligence"
    CLOSING = "closing"


class ProcessStatus(str, Enum):
    NOT_STARTED = "notStarted"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"


class ContactType(str, Enum):
    EQUITY = "equity"
    DEBT = "debt"
    ARCHITECT = "architect"
    MARKET_STUDY = "marketStudy"
    NON_PROFIT = "nonProfit"
    OTHER = "other"


ALLOWED_TRANSITIONS = {
    DealStatus.PROSPECTIVE: {DealStatus.ACTIVE, DealStatus.DEAD},
    DealStatus.ACTIVE: {DealStatus.CLOSED, DealStatus.DEAD},
    DealStatus.DEAD: {DealStatus.PROSPECTIVE},
    DealStatus.CLOSED: set(),
}

PROCESS_NAMES = {
    ProcessType.LIHTC: "LIHTC Application",
    ProcessType.BONDS: "Bond Financing",
    ProcessType.CAPITAL: "Capital Stack",
    ProcessType.DUE_DILIGENCE: "Due Diligence",
    ProcessType.CLOSING: "Closing",
}


# =============================================================================
# ERRORS
# =============================================================================

class NotFoundError(LookupError):
    """A deal, process, checklist item or contact id does not exist."""


class InvalidTransitionError(ValueError):
    """Requested status change is not allowed from the current status."""


# =============================================================================
# DATA CLASSES
# =============================================================================

def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _enum(enum_cls, value, what: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Invalid {what} {value!r}; expected one of: {allowed}")


def _require_object(d, what: str) -> dict:
    if not isinstance(d, dict):
        raise ValueError(f"{what} must be an object")
    return d


def _site_data(value) -> dict:
    if value is None:
        return {}
    return _require_object(value, "site_data")


def _progress(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("progress must be a number between 0 and 100")
    if not 0 <= value <= 100:
        raise ValueError("progress must be between 0 and 100")
    return int(value)


@dataclass
class ChecklistItem:
    title: str
    completed: bool = False
    description: Optional[str] = None
    due_date: Optional[str] = None
    assigned_to: Optional[str] = None
    notes: Optional[str] = None
    id: str = field(default_factory=_new_id)

    EDITABLE = ("title", "completed", "description", "due_date", "assigned_to", "notes")

    @classmethod
    def from_dict(cls, d: dict, keep_ids: bool = True) -> "ChecklistItem":
        _require_object(d, "checklist item")
        if not d.get("title"):
            raise ValueError("checklist item title is required")
        item = cls(title=d["title"])
        for key in cls.EDITABLE:
            if key in d:
                setattr(item, key, d[key])
        item.completed = bool(item.completed)
        if keep_ids and d.get("id"):
            item.id = d["id"]
        return item

    def to_dict(self) -> dict:
        return {k: getattr(self, k) for k in ("id",) + self.EDITABLE}


@dataclass
class Process:
    type: ProcessType
    name: str
    status: ProcessStatus = ProcessStatus.NOT_STARTED
    progress: int = 0
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    checklist: List[ChecklistItem] = field(default_factory=list)
    id: str = field(default_factory=_new_id)

    @classmethod
    def from_dict(cls, d: dict, keep_ids: bool = True) -> "Process":
        """Build a process; with keep_ids=False every nested id is regenerated."""
        _require_object(d, "process")
        ptype = _enum(ProcessType, d.get("type"), "process type")
        proc = cls(
            type=ptype,
            name=d.get("name") or PROCESS_NAMES[ptype],
            status=_enum(ProcessStatus, d.get("status", "notStarted"), "process status"),
            progress=_progress(d.get("progress", 0)),
            start_date=d.get("start_date"),
            due_date=d.get("due_date"),
            checklist=[ChecklistItem.from_dict(i, keep_ids) for i in d.get("checklist") or []],
        )
        if keep_ids and d.get("id"):
            proc.id = d["id"]
        return proc

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
            "start_date": self.start_date,
            "due_date": self.due_date,
            "checklist": [i.to_dict() for i in self.checklist],
        }


@dataclass
class Contact:
    name: str
    type: ContactType = ContactType.OTHER
    company: str = ""
    role: str = ""
    email: str = ""
    phone: str = ""
    id: str = field(default_factory=_new_id)

    EDITABLE = ("name", "company", "role", "email", "phone")

    @classmethod
    def from_dict(cls, d: dict, keep_ids: bool = True) -> "Contact":
        _require_object(d, "contact")
        if not d.get("name"):
            raise ValueError("contact name is required")
        contact = cls(name=d["name"], type=_enum(ContactType, d.get("type", "other"), "contact type"))
        for key in cls.EDITABLE:
            if key in d:
                setattr(contact, key, d[key] or "")
        if keep_ids and d.get("id"):
            contact.id = d["id"]
        return contact

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "company": self.company,
            "role": self.role,
            "email": self.email,
            "phone": self.phone,
        }


@dataclass
class Deal:
    name: str
    address: str
    status: DealStatus = DealStatus.PROSPECTIVE
    site_data: Dict = field(default_factory=dict)
    processes: List[Process] = field(default_factory=list)
    contacts: List[Contact] = field(default_factory=list)
    notes: str = ""
    id: str = field(default_factory=_new_id)
    date_added: str = field(default_factory=_now)
    date_updated: str = field(default_factory=_now)

    @classmethod
    def from_dict(cls, d: dict) -> "Deal":
        deal = cls(
            name=d["name"],
            address=d["address"],
            status=_enum(DealStatus, d.get("status", "prospective"), "deal status"),
            site_data=d.get("site_data") or {},
            processes=[Process.from_dict(p) for p in d.get("processes") or []],
            contacts=[Contact.from_dict(c) for c in d.get("contacts") or []],
            notes=d.get("notes") or "",
        )
        for key in ("id", "date_added", "date_updated"):
            if d.get(key):
                setattr(deal, key, d[key])
        return deal

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "status": self.status.value,
            "date_added": self.date_added,
            "date_updated": self.date_updated,
            "site_data": self.site_data,
            "processes": [p.to_dict() for p in self.processes],
            "contacts": [c.to_dict() for c in self.contacts],
            "notes": self.notes,
            "progress": deal_progress(self),
        }

    def find_process(self, process_id: str) -> Process:
        for proc in self.processes:
            if proc.id == process_id:
                return proc
        raise NotFoundError(f"Process {process_id} not found")

    def find_contact(self, contact_id: str) -> Contact:
        for contact in self.contacts:
            if contact.id == contact_id:
                return contact
        raise NotFoundError(f"Contact {contact_id} not found")


def deal_progress(deal: Deal) -> float:
    """Mean process progress; 0 for a deal with no processes."""
    if not deal.processes:
        return 0
    return sum(p.progress for p in deal.processes) / len(deal.processes)


# =============================================================================
# PERSISTENCE
# =============================================================================

def _save(deal: Deal, touch: bool = True) -> Deal:
    if touch:
        deal.date_updated = _now()
    models.save_deal(deal.to_dict())
    return deal


def get_deal(deal_id: str) -> Deal:
    data = models.load_deal(deal_id)
    if data is None:
        raise NotFoundError(f"Deal {deal_id} not found")
    return Deal.from_dict(data)


def list_deals(status: Optional[str] = None) -> List[Deal]:
    if status is not None:
        status = _enum(DealStatus, status, "deal status").value
    return [Deal.from_dict(d) for d in models.load_deals(status)]


def delete_deal(deal_id: str) -> None:
    if not models.delete_deal(deal_id):
        raise NotFoundError(f"Deal {deal_id} not found")


# =============================================================================
# OPERATIONS
# =============================================================================

def add_deal(name: str, address: str, status: str = "prospective",
             site_data: Optional[dict] = None, processes=None, contacts=None,
             notes: str = "") -> Deal:
    """Create and persist a deal; ids and dates are generated here."""
    if not name or not address:
        raise ValueError("name and address are required")
    deal = Deal(
        name=name,
        address=address,
        status=_enum(DealStatus, status, "deal status"),
        site_data=_site_data(site_data),
        processes=[Process.from_dict(p, keep_ids=False) for p in processes or []],
        contacts=[Contact.from_dict(c, keep_ids=False) for c in contacts or []],
        notes=notes or "",
    )
    with _lock:
        _save(deal, touch=False)
    logger.info("Deal %s created for %r (%s)", deal.id, address, deal.status.value)
    return deal


def add_deal_from_site(site: dict, name: Optional[str] = None) -> Deal:
    """Start a prospective deal from an evaluated site."""
    address = site.get("address")
    if not address:
        raise ValueError("site has no address")
    return add_deal(
        name=name or address.split(",")[0],
        address=address,
        site_data=site,
    )


_DEAL_EDITABLE = ("name", "address", "notes", "site_data")
_DEAL_PROTECTED = ("id", "status", "date_added", "date_updated")


def update_deal(deal_id: str, changes: dict) -> Deal:
    """Partial update of the deal's own fields.

    Status goes through update_deal_status; ids and dates are never
    client-writable.
    """
    for key in changes:
        if key in _DEAL_PROTECTED:
            raise ValueError(f"{key} cannot be changed with a deal update")
        if key not in _DEAL_EDITABLE:
            raise ValueError(f"Unknown deal field: {key}")
    with _lock:
        deal = get_deal(deal_id)
        for key, value in changes.items():
            if key == "site_data":
                deal.site_data = _site_data(value)
            else:
                setattr(deal, key, value or "")
        if not deal.name or not deal.address:
            raise ValueError("name and address cannot be empty")
        return _save(deal)


def update_deal_status(deal_id: str, status: str) -> Deal:
    """Move a deal along its lifecycle. Same-status requests are no-ops."""
    new_status = _enum(DealStatus, status, "deal status")
    with _lock:
        deal = get_deal(deal_id)
        if new_status == deal.status:
            return deal
        if new_status not in ALLOWED_TRANSITIONS[deal.status]:
            raise InvalidTransitionError(
                f"Cannot move deal from {deal.status.value} to {new_status.value}"
            )
        old = deal.status
        deal.status = new_status
        _save(deal)
    logger.info("Deal %s status %s -> %s", deal_id, old.value, new_status.value)
    return deal


def add_process(deal_id: str, process: dict) -> Process:
    proc = Process.from_dict(process, keep_ids=False)
    with _lock:
        deal = get_deal(deal_id)
        deal.processes.append(proc)
        _save(deal)
    return proc


_PROCESS_EDITABLE = ("name", "status", "progress", "start_date", "due_date")


def update_process(deal_id: str, process_id: str, changes: dict) -> Process:
    for key in changes:
        if key not in _PROCESS_EDITABLE:
            raise ValueError(f"Unknown or read-only process field: {key}")
    with _lock:
        deal = get_deal(deal_id)
        proc = deal.find_process(process_id)
        if "status" in changes:
            proc.status = _enum(ProcessStatus, changes["status"], "process status")
        if "progress" in changes:
            proc.progress = _progress(changes["progress"])
        for key in ("name", "start_date", "due_date"):
            if key in changes:
                setattr(proc, key, changes[key])
        if not proc.name:
            raise ValueError("process name cannot be empty")
        _save(deal)
    return proc


def update_checklist_item(deal_id: str, process_id: str, item_id: str,
                          changes: dict) -> ChecklistItem:
    for key in changes:
        if key not in ChecklistItem.EDITABLE:
            raise ValueError(f"Unknown checklist field: {key}")
    with _lock:
        deal = get_deal(deal_id)
        proc = deal.find_process(process_id)
        item = next((i for i in proc.checklist if i.id == item_id), None)
        if item is None:
            raise NotFoundError(f"Checklist item {item_id} not found")
        for key, value in changes.items():
            setattr(item, key, bool(value) if key == "completed" else value)
        if not item.title:
            raise ValueError("checklist item title cannot be empty")
        _save(deal)
    return item


def add_contact(deal_id: str, contact: dict) -> Contact:
    new_contact = Contact.from_dict(contact, keep_ids=False)
    with _lock:
        deal = get_deal(deal_id)
        deal.contacts.append(new_contact)
        _save(deal)
    return new_contact


def update_contact(deal_id: str, contact_id: str, changes: dict) -> Contact:
    for key in changes:
        if key not in Contact.EDITABLE and key != "type":
            raise ValueError(f"Unknown contact field: {key}")
    with _lock:
        deal = get_deal(deal_id)
        contact = deal.find_contact(contact_id)
        if "type" in changes:
            contact.type = _enum(ContactType, changes["type"], "contact type")
        for key in Contact.EDITABLE:
            if key in changes:
                setattr(contact, key, changes[key] or "")
        if not contact.name:
            raise ValueError("contact name cannot be empty")
        _save(deal)
    return contact


def remove_contact(deal_id: str, contact_id: str) -> None:
    with _lock:
        deal = get_deal(deal_id)
        deal.find_contact(contact_id)
        deal.contacts = [c for c in deal.contacts if c.id != contact_id]
        _save(deal)
