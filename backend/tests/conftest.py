"""
Shared fixtures for settlement tests.

InMemoryDatabase mimics the slice of the Motor API the settlement core uses:
async find_one / find / insert_one / update_one / replace_one, unique
(optionally partial) indexes raising DuplicateKeyError, and sessions whose
transactions roll every collection back when the block raises.
"""
import asyncio
import copy
from datetime import datetime
from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from audit_service import AuditService
from ledger_core.commission_calculator import CommissionCalculator
from ledger_core.contract_document import RenderedDocument
from ledger_core.ledger_store import LedgerStore
from ledger_core.settlement_engine import SettlementEngine
from ledger_core.stamping_client import StampingProviderError, StampReceipt
from ledger_core.stamping_trigger import StampingTrigger


# ============================================
# IN-MEMORY MOTOR DOUBLE
# ============================================

_MISSING = object()


def _get_path(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches_condition(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$in":
                if value is _MISSING or value not in operand:
                    return False
            elif op == "$ne":
                if value is not _MISSING and value == operand:
                    return False
            elif op == "$exists":
                if (value is not _MISSING) != bool(operand):
                    return False
            else:
                raise NotImplementedError(op)
        return True
    if value is _MISSING:
        return condition is None
    return value == condition


def matches(doc, query):
    return all(_matches_condition(_get_path(doc, key), cond) for key, cond in (query or {}).items())


class InMemoryCursor:
    def __init__(self, docs):
        self._docs = docs

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class InMemoryCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = []
        self.failures = {}

    def _maybe_fail(self, method):
        error = self.failures.pop(method, None)
        if error:
            raise error

    def _check_unique(self, candidate, ignore=None):
        for index in self.indexes:
            if not index["unique"]:
                continue
            partial = index["partial"]
            if partial and not matches(candidate, partial):
                continue
            key = tuple(_get_path(candidate, field) for field in index["fields"])
            for existing in self.docs:
                if existing is ignore:
                    continue
                if partial and not matches(existing, partial):
                    continue
                if tuple(_get_path(existing, field) for field in index["fields"]) == key:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {index['name']}")

    async def create_index(self, keys, unique=False, partialFilterExpression=None, name=None, **kwargs):
        fields = [k for k, _ in keys] if isinstance(keys, list) else [keys]
        self.indexes.append({
            "fields": fields,
            "unique": unique,
            "partial": partialFilterExpression,
            "name": name or "_".join(fields),
        })
        return name

    async def find_one(self, query=None, session=None, **kwargs):
        self._maybe_fail("find_one")
        for doc in self.docs:
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, session=None, **kwargs):
        return InMemoryCursor([copy.deepcopy(d) for d in self.docs if matches(d, query)])

    async def count_documents(self, query=None, session=None):
        return len([d for d in self.docs if matches(d, query)])

    async def insert_one(self, doc, session=None):
        self._maybe_fail("insert_one")
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        stored = copy.deepcopy(doc)
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def update_one(self, query, update, upsert=False, session=None):
        self._maybe_fail("update_one")
        for idx, doc in enumerate(self.docs):
            if matches(doc, query):
                updated = copy.deepcopy(doc)
                for path, value in update.get("$set", {}).items():
                    self._set_path(updated, path, value)
                for path, value in update.get("$inc", {}).items():
                    current = _get_path(updated, path)
                    self._set_path(updated, path, (0 if current is _MISSING else current) + value)
                self._check_unique(updated, ignore=doc)
                self.docs[idx] = updated
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            new_doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            new_doc.update(update.get("$setOnInsert", {}))
            new_doc.update(update.get("$set", {}))
            result = await self.insert_one(new_doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=result.inserted_id)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def replace_one(self, query, replacement, session=None):
        self._maybe_fail("replace_one")
        for idx, doc in enumerate(self.docs):
            if matches(doc, query):
                stored = copy.deepcopy(replacement)
                stored["_id"] = doc["_id"]
                self._check_unique(stored, ignore=doc)
                self.docs[idx] = stored
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    @staticmethod
    def _set_path(doc, path, value):
        parts = path.split(".")
        for part in parts[:-1]:
            doc = doc.setdefault(part, {})
        doc[parts[-1]] = value


class InMemoryDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def snapshot(self):
        return {name: copy.deepcopy(col.docs) for name, col in self._collections.items()}

    def restore(self, snapshot):
        for name, col in self._collections.items():
            col.docs = copy.deepcopy(snapshot.get(name, []))


class InMemoryTransaction:
    def __init__(self, db):
        self.db = db
        self.committed = False

    async def __aenter__(self):
        self._snapshot = self.db.snapshot()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.db.restore(self._snapshot)
        else:
            self.committed = True
        return False


class InMemorySession:
    def __init__(self, client):
        self.client = client

    def start_transaction(self):
        transaction = InMemoryTransaction(self.client.db)
        self.client.transactions.append(transaction)
        return transaction

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class InMemoryClient:
    def __init__(self, db):
        self.db = db
        self.transactions = []

    async def start_session(self):
        return InMemorySession(self)

    def close(self):
        pass


# ============================================
# COLLABORATOR STUBS
# ============================================

class StubRenderer:
    """Renders a fixed three-page document"""

    def __init__(self):
        self.rendered = []

    def render(self, contract_data):
        self.rendered.append(contract_data)
        return RenderedDocument(
            content=b"%PDF-1.4 stub",
            page_count=3,
            filename=f"contract-{contract_data['contract_id']}.pdf"
        )


class StubStampProvider:
    """Records stamp requests; optionally fails like a timed-out provider"""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def stamp_document(self, pdf_bytes, filename, coordinates):
        self.calls.append({"filename": filename, "coordinates": coordinates})
        if self.fail:
            raise StampingProviderError("Stamping provider timed out")
        return StampReceipt(
            uuid=f"uuid-{len(self.calls)}",
            file_url=f"https://stamp.example/{filename}",
            status_text="success"
        )


def run(coro):
    return asyncio.run(coro)


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def db():
    database = InMemoryDatabase()
    run(LedgerStore(database).ensure_indexes())
    return database


@pytest.fixture
def client(db):
    return InMemoryClient(db)


@pytest.fixture
def store(db):
    return LedgerStore(db)


@pytest.fixture
def provider():
    return StubStampProvider()


@pytest.fixture
def renderer():
    return StubRenderer()


@pytest.fixture
def audit_service(db):
    return AuditService(db)


@pytest.fixture
def stamping_trigger(store, renderer, provider, audit_service):
    return StampingTrigger(store, renderer, provider, audit_service=audit_service)


@pytest.fixture
def commission_calculator(store):
    return CommissionCalculator(store)


@pytest.fixture
def engine(client, db, store, stamping_trigger, commission_calculator, audit_service):
    return SettlementEngine(
        client,
        db,
        stamping_trigger=stamping_trigger,
        commission_calculator=commission_calculator,
        audit_service=audit_service,
        store=store
    )


# ============================================
# DOCUMENT BUILDERS
# ============================================

def insert(db, collection, doc):
    run(db[collection].insert_one(doc))
    return doc


def make_user(db, full_name="Siti Rahma", role="investor", referral_code=None):
    doc = {
        "full_name": full_name,
        "email": f"{full_name.split()[0].lower()}@example.com",
        "phone_number": "08123456789",
        "role": role,
    }
    if referral_code:
        doc["referral_code"] = referral_code
    return insert(db, "users", doc)


def make_contract(db, contract_id, user, approved=True, total_amount=None, **extra):
    doc = {
        "contract_id": contract_id,
        "user_id": str(user["_id"]),
        "admin_approval_status": "approved" if approved else "pending",
        "status": "approved" if approved else "pending",
        "payment_completed": False,
        "total_amount": total_amount,
        "product_ref": extra.pop("product_ref", "Gaharu 10 Pohon"),
        "signature_attempts": [
            {"signature_data": "", "review_status": "approved"}
        ],
        "stamped": False,
    }
    doc.update(extra)
    return insert(db, "contracts", doc)


def make_full_payment(db, order_id, user, amount=10000000, referral_code=None, **extra):
    doc = {
        "order_id": order_id,
        "user_id": str(user["_id"]),
        "amount": amount,
        "kind": "full",
        "product_ref": "Gaharu 10 Pohon",
        "referral_code": referral_code,
        "status": "approved",
        "processed": False,
        "settlement_time": datetime(2026, 1, 15, 9, 0),
    }
    doc.update(extra)
    return insert(db, "payments", doc)


def make_installment_payment(
    db,
    order_id,
    user,
    chain_id,
    number=1,
    total_installments=12,
    installment_amount=1000000,
    payment_term="monthly",
    due_date=datetime(2026, 1, 31),
    referral_code=None,
    **extra
):
    doc = {
        "order_id": order_id,
        "user_id": str(user["_id"]),
        "amount": installment_amount,
        "kind": "installment",
        "chain_id": chain_id,
        "installment_number": number,
        "total_installments": total_installments,
        "installment_amount": installment_amount,
        "payment_term": payment_term,
        "due_date": due_date,
        "product_ref": "Gaharu 10 Pohon",
        "referral_code": referral_code,
        "status": "approved",
        "processed": False,
    }
    doc.update(extra)
    return insert(db, "payments", doc)
