"""Tests for CorruptionDetector — analyze, flag/delete cleanup, key-based repair."""

from __future__ import annotations

import asyncio

import pytest

from glycosync.core.errors import NetworkError
from glycosync.core.remote.documents import InMemoryDocumentCollection
from glycosync.core.repair.detector import CorruptionDetector
from glycosync.core.storage.database import SyncDatabase
from glycosync.core.storage.encryption import EncryptionService
from glycosync.core.storage.models import CORRUPTED_MARKER, Measurement
from glycosync.core.storage.state import LocalStateStore


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _m(id: str, timestamp: int = 1_000) -> Measurement:
    return Measurement(id=id, value=100.0, type="fasting", timestamp=timestamp)


@pytest.fixture
def seeded(document_collection, envelope_factory):
    """Two healthy envelopes, two structurally corrupt ones, one for another user."""
    docs = {
        "user-1_ok1": envelope_factory(_m("ok1")),
        "user-1_ok2": envelope_factory(_m("ok2")),
        "user-1_short": envelope_factory(_m("short"), encrypted_data="short"),
        "user-1_nodelim": envelope_factory(_m("nodelim"), encrypted_data="x" * 64),
        "other_bad": envelope_factory(_m("bad"), user_id="other", encrypted_data="short"),
    }
    for doc_id, doc in docs.items():
        _run(document_collection.set(doc_id, doc))
    return document_collection


@pytest.fixture
def detector(document_collection, encryption, audit_logger, clock):
    return CorruptionDetector(document_collection, encryption, audit=audit_logger, clock=clock)


def _flagged_count(collection: InMemoryDocumentCollection) -> int:
    return sum(1 for doc in collection.snapshot().values() if doc.get("isCorrupted") is True)


class TestAnalyze:
    def test_counts_structural_failures(self, detector, seeded):
        report = _run(detector.analyze("user-1"))
        assert report.status == "ok"
        assert report.total_documents == 4
        assert report.potentially_corrupted == 2
        assert report.corrupted_ids == ["user-1_nodelim", "user-1_short"]

    def test_short_envelope_is_corrupted(self, detector, document_collection, envelope_factory):
        _run(document_collection.set("user-1_s", envelope_factory(_m("s"), encrypted_data="short")))
        assert _run(detector.analyze("user-1")).corrupted_ids == ["user-1_s"]

    def test_read_only_and_deterministic(self, detector, seeded):
        before = seeded.snapshot()
        first = _run(detector.analyze("user-1"))
        second = _run(detector.analyze("user-1"))
        assert first.corrupted_ids == second.corrupted_ids
        assert seeded.snapshot() == before

    def test_does_not_decrypt(self, detector, document_collection, envelope_factory):
        # Structurally fine but encrypted under an unknown key: not reported by analyze.
        _run(document_collection.set(
            "user-1_foreign",
            envelope_factory(_m("foreign"), encrypted_data="v1:abcdef:" + "x" * 60),
        ))
        assert _run(detector.analyze("user-1")).potentially_corrupted == 0

    def test_remote_failure_becomes_error_report(self, encryption):
        class Broken(InMemoryDocumentCollection):
            async def where_equal(self, field, value):
                raise NetworkError("offline")

        report = _run(CorruptionDetector(Broken(), encryption).analyze("user-1"))
        assert report.status == "error"
        assert report.error_type == "NetworkError"


class TestCleanup:
    def test_delete_reduces_total_by_matched(self, detector, seeded):
        before = _run(detector.analyze("user-1")).total_documents
        report = _run(detector.clean_corrupted_measurements("user-1", "delete"))
        after = _run(detector.analyze("user-1")).total_documents
        assert report.deleted == report.matched == 2
        assert after == before - report.matched
        # Other users' documents are untouched.
        assert "other_bad" in seeded.snapshot()

    def test_flag_keeps_total_and_preserves_ciphertext(self, detector, seeded):
        before_total = _run(detector.analyze("user-1")).total_documents
        before_flagged = _flagged_count(seeded)
        report = _run(detector.clean_corrupted_measurements("user-1", "flag"))

        assert report.flagged == report.matched == 2
        assert _run(detector.analyze("user-1")).total_documents == before_total
        assert _flagged_count(seeded) == before_flagged + report.matched

        doc = seeded.snapshot()["user-1_short"]
        assert doc["encryptedData"] == CORRUPTED_MARKER
        assert doc["originalEncryptedData"] == "short"
        assert doc["isCorrupted"] is True
        assert doc["corruptedAt"] == 1_700_000_000_000

    def test_flag_twice_keeps_original(self, detector, seeded):
        _run(detector.clean_corrupted_measurements("user-1", "flag"))
        second = _run(detector.clean_corrupted_measurements("user-1", "flag"))
        assert second.flagged == 0
        assert second.already_flagged == 2
        assert seeded.snapshot()["user-1_short"]["originalEncryptedData"] == "short"

    def test_known_bad_ids_match_even_if_valid(self, seeded, encryption):
        detector = CorruptionDetector(seeded, encryption, known_bad_ids=["user-1_ok1"])
        report = _run(detector.clean_corrupted_measurements("user-1", "delete"))
        assert "user-1_ok1" in report.affected_ids
        assert report.deleted == 3

    def test_invalid_mode(self, detector, seeded):
        report = _run(detector.clean_corrupted_measurements("user-1", "shred"))
        assert report.status == "error"
        assert len(seeded) == 5

    def test_delete_is_audited(self, detector, seeded, audit_logger):
        _run(detector.clean_corrupted_measurements("user-1", "delete"))
        deletes = audit_logger.get_events(action="data_delete")
        assert deletes[0]["record_count"] == 2


class TestRepair:
    def _flag(self, collection, doc_id):
        doc = _run(collection.get(doc_id))
        _run(collection.set(doc_id, {
            "originalEncryptedData": doc["encryptedData"],
            "encryptedData": CORRUPTED_MARKER,
            "isCorrupted": True,
            "corruptedAt": 1,
        }, merge=True))

    def test_repairs_envelope_readable_with_legacy_key(self, detector, document_collection, envelope_factory, encryption):
        _run(document_collection.set("user-1_a", envelope_factory(_m("a"))))
        self._flag(document_collection, "user-1_a")
        encryption.reset_encryption_key()

        report = _run(detector.scan_and_repair_corrupted_documents("user-1"))
        assert (report.found, report.fixed, report.failed) == (1, 1, 0)

        doc = document_collection.snapshot()["user-1_a"]
        assert "isCorrupted" not in doc
        assert "originalEncryptedData" not in doc
        assert doc["encryptedData"].split(":")[1] == encryption.key_hash
        assert encryption.decrypt(doc["encryptedData"])["id"] == "a"

    def test_unrepairable_stays_flagged_and_counts_attempts(self, detector, seeded):
        _run(detector.clean_corrupted_measurements("user-1", "flag"))
        _run(detector.scan_and_repair_corrupted_documents("user-1"))
        report = _run(detector.scan_and_repair_corrupted_documents("user-1"))

        assert report.found == 2
        assert report.failed == 2
        doc = seeded.snapshot()["user-1_short"]
        assert doc["isCorrupted"] is True
        assert doc["repairAttempts"] == 2

    def test_candidate_key_repairs_and_is_retained(self, detector, document_collection, envelope_factory, encryption):
        with SyncDatabase(":memory:") as db:
            old_device = EncryptionService(LocalStateStore(db))
            old_device.initialize_encryption_key()
            ciphertext = old_device.encrypt(_m("old").to_dict())
            old_key = old_device.export_key()

        _run(document_collection.set(
            "user-1_old", envelope_factory(_m("old"), encrypted_data=ciphertext)
        ))
        self._flag(document_collection, "user-1_old")

        without = _run(detector.scan_and_repair_corrupted_documents("user-1"))
        assert without.fixed == 0

        report = _run(detector.scan_and_repair_corrupted_documents("user-1", old_key))
        assert report.fixed == 1
        assert report.candidate_key_retained is True
        assert old_key in encryption.key_record.legacy_keys

    def test_unused_candidate_not_retained(self, detector, seeded, encryption):
        from cryptography.fernet import Fernet

        _run(detector.clean_corrupted_measurements("user-1", "flag"))
        stray = Fernet.generate_key().decode()
        report = _run(detector.scan_and_repair_corrupted_documents("user-1", stray))
        assert report.candidate_key_retained is False
        assert stray not in encryption.key_record.legacy_keys

    def test_repaired_documents_visible_to_sync_reads(self, detector, document_collection, envelope_factory, encryption, session):
        from glycosync.core.remote.document_store import DocumentRemoteStore

        _run(document_collection.set("user-1_a", envelope_factory(_m("a"))))
        self._flag(document_collection, "user-1_a")
        store = DocumentRemoteStore(document_collection, encryption, session)
        assert _run(store.get_measurements()) == []

        _run(detector.scan_and_repair_corrupted_documents("user-1"))
        assert [m.id for m in _run(store.get_measurements())] == ["a"]
