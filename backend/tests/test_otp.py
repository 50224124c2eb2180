"""
Citizen phone verification codes: issue, verify, lockout, expiry.
"""

import re
from datetime import timedelta

import pytest

from tracking.errors import InvalidAction
from tracking.notifications import Notifier
from tracking.otp import MAX_ATTEMPTS, OtpVerifier
from tracking.timeline import utcnow

PHONE = "98900 12345"


@pytest.fixture
def verifier(db):
    return OtpVerifier(db, Notifier(db))


def _sent_code(db):
    note = db.notification_outbox.find_one({"action": "OTP"}, sort=[("created_at", -1)])
    return re.search(r"\b\d{6}\b", note["message"]).group()


class TestSend:
    def test_code_is_queued_and_stored_hashed(self, db, verifier):
        verifier.send(PHONE, "company-a", "mr")
        note = db.notification_outbox.find_one({"action": "OTP"})
        assert note["recipient_phone"] == "919890012345"
        assert note["channel"] == "whatsapp"
        assert "पडताळणी" in note["message"]
        stored = db.otp_codes.find_one({"phone": "919890012345"})
        assert stored["attempts"] == 0
        assert _sent_code(db) not in stored["code_hash"]

    def test_resend_replaces_pending_code(self, db, verifier):
        verifier.send(PHONE)
        verifier.send(PHONE)
        assert db.otp_codes.count_documents({"phone": "919890012345"}) == 1

    def test_unusable_phone(self, verifier):
        with pytest.raises(InvalidAction):
            verifier.send("12345")


class TestVerify:
    def test_correct_code(self, db, verifier):
        verifier.send(PHONE)
        assert not verifier.is_verified(PHONE)
        assert verifier.verify(PHONE, _sent_code(db))
        assert verifier.is_verified("+91 98900 12345")

    def test_wrong_code(self, db, verifier):
        verifier.send(PHONE)
        code = _sent_code(db)
        wrong = "000000" if code != "000000" else "111111"
        assert not verifier.verify(PHONE, wrong)
        assert not verifier.is_verified(PHONE)

    def test_too_many_attempts_revokes_code(self, db, verifier):
        verifier.send(PHONE)
        code = _sent_code(db)
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(MAX_ATTEMPTS):
            assert not verifier.verify(PHONE, wrong)
        assert not verifier.verify(PHONE, code)
        assert db.otp_codes.count_documents({}) == 0

    def test_expired_code(self, db, verifier):
        verifier.send(PHONE)
        db.otp_codes.update_many({}, {"$set": {"expires_at": utcnow() - timedelta(seconds=1)}})
        assert not verifier.verify(PHONE, _sent_code(db))

    def test_verification_lapses_after_a_day(self, db, verifier):
        verifier.send(PHONE)
        verifier.verify(PHONE, _sent_code(db))
        db.otp_codes.update_many({}, {"$set": {"verified_at": utcnow() - timedelta(hours=25)}})
        assert not verifier.is_verified(PHONE)
