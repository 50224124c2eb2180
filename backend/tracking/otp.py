# One-time codes confirming that a citizen controls the phone number they file from
#
#   otp_codes: {"_id", "phone", "company_id", "code_hash", "attempts", "verified",
#               "expires_at", "verified_at", "created_at"}
#
# The code itself only leaves this module inside the queued WhatsApp message;
# the stored copy is a bcrypt hash.

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional

from passlib.context import CryptContext
from pymongo import ReturnDocument

from .errors import InvalidAction
from .notifications import Notification, Notifier, mask_phone, normalize_phone
from .store import guarded
from .timeline import as_utc, utcnow

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
OTP_TTL = timedelta(minutes=10)
MAX_ATTEMPTS = 5
VERIFIED_WINDOW = timedelta(hours=24)

MESSAGES = {
    "en": "Your verification code is {code}. It is valid for 10 minutes. Do not share it with anyone.",
    "hi": "आपका सत्यापन कोड {code} है। यह 10 मिनट के लिए मान्य है। इसे किसी के साथ साझा न करें।",
    "mr": "तुमचा पडताळणी कोड {code} आहे. तो 10 मिनिटांसाठी वैध आहे. तो कोणालाही सांगू नका.",
}

_code_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


class OtpVerifier:
    def __init__(self, db, notifier: Notifier, timeout: Optional[float] = None):
        self.codes = db.otp_codes
        self.notifier = notifier
        self.timeout = timeout

    def _phone(self, phone: str) -> str:
        normalized = normalize_phone(phone)
        if not normalized:
            raise InvalidAction(f"not a usable phone number: {phone!r}")
        return normalized

    def send(self, phone: str, company_id: Optional[str] = None, language: str = "en") -> datetime:
        """Issue a fresh code for *phone*, replacing any pending one, and queue it.

        Returns when the code expires.
        """
        phone = self._phone(phone)
        code = generate_code()
        now = utcnow()
        expires_at = now + OTP_TTL
        guarded(self.codes.delete_many, {"phone": phone, "verified": False}, timeout=self.timeout)
        guarded(self.codes.insert_one, {
            "_id": str(uuid.uuid4()), "phone": phone, "company_id": company_id,
            "code_hash": _code_context.hash(code), "attempts": 0, "verified": False,
            "expires_at": expires_at, "verified_at": None, "created_at": now,
        }, timeout=self.timeout)
        self.notifier.queue([Notification(
            entity_type="citizen", entity_id=phone, action="OTP", recipient_phone=phone,
            message=MESSAGES.get(language, MESSAGES["en"]).format(code=code))])
        logger.info("Verification code issued for %s", mask_phone(phone))
        return expires_at

    def verify(self, phone: str, code: str) -> bool:
        phone = self._phone(phone)
        pending = guarded(self.codes.find_one, {"phone": phone, "verified": False},
                          sort=[("created_at", -1)], timeout=self.timeout)
        if not pending or as_utc(pending["expires_at"]) <= utcnow():
            return False
        pending = guarded(self.codes.find_one_and_update,
                          {"_id": pending["_id"], "verified": False},
                          {"$inc": {"attempts": 1}},
                          return_document=ReturnDocument.AFTER, timeout=self.timeout)
        if pending is None:
            return False
        if pending["attempts"] > MAX_ATTEMPTS:
            guarded(self.codes.delete_many, {"phone": phone, "verified": False}, timeout=self.timeout)
            logger.warning("Too many verification attempts for %s, pending codes revoked",
                           mask_phone(phone))
            return False
        if not _code_context.verify(code, pending["code_hash"]):
            return False
        # The TTL index keys on expires_at; keep a verified record for its whole window.
        now = utcnow()
        guarded(self.codes.update_one, {"_id": pending["_id"]},
                {"$set": {"verified": True, "verified_at": now,
                          "expires_at": now + VERIFIED_WINDOW}}, timeout=self.timeout)
        logger.info("Phone %s verified", mask_phone(phone))
        return True

    def is_verified(self, phone: Optional[str]) -> bool:
        """True when *phone* passed verification within the last 24 hours."""
        phone = normalize_phone(phone)
        if not phone:
            return False
        last = guarded(self.codes.find_one, {"phone": phone, "verified": True},
                       sort=[("verified_at", -1)], timeout=self.timeout)
        return bool(last) and as_utc(last["verified_at"]) > utcnow() - VERIFIED_WINDOW
