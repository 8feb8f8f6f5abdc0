"""
Shared fixtures: a throwaway SQLite database per test, the stores bound to
it, and a local object store rooted in tmp_path.
"""

import pytest

from deed_integrity.core.database import build_engine, build_session_factory, create_tables
from deed_integrity.services.documents import DocumentStore
from deed_integrity.services.hash_commit import HashCommitService
from deed_integrity.services.hash_records import HashRecordStore
from deed_integrity.services.retry import RetryPolicy
from deed_integrity.services.storage import LocalObjectStore
from deed_integrity.services.verification import VerificationService
from deed_integrity.services.verification_records import VerificationStore

DEED_CONTENT = b"%PDF-1.4 Warranty deed, Parcel 12-345-678, Hennepin County. " * 64

# No waiting between attempts in tests
FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay=0.0, multiplier=2.0, max_delay=0.0)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def deed_content():
    return DEED_CONTENT


@pytest.fixture
def fast_retry():
    return FAST_RETRY


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def documents(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def hash_records(session_factory):
    return HashRecordStore(session_factory)


@pytest.fixture
def verifications(session_factory):
    return VerificationStore(session_factory)


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def commit_service(documents, hash_records, object_store):
    return HashCommitService(documents, hash_records, object_store, retry_policy=FAST_RETRY)


@pytest.fixture
def verification_service(documents, hash_records, verifications):
    return VerificationService(documents, hash_records, verifications, retry_policy=FAST_RETRY)


@pytest.fixture
def upload_deed(documents, object_store):
    """Store a file and register it as a pending document."""
    counter = {"n": 0}

    async def _upload(content: bytes = DEED_CONTENT, property_id: str = "prop-001", **overrides):
        counter["n"] += 1
        storage_path = f"deeds/{property_id}/deed-{counter['n']}.pdf"
        await object_store.upload(storage_path, content, "application/pdf")
        fields = {
            "property_id": property_id,
            "doc_number": f"DEED-{counter['n']:04d}",
            "uploader_id": "staff-001",
            "storage_path": storage_path,
            "file_size": len(content),
            "mime_type": "application/pdf",
            "original_filename": "deed.pdf",
        }
        fields.update(overrides)
        return await documents.create_document(**fields)

    return _upload
