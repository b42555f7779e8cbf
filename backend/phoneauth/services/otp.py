import json
import logging
import secrets
import time
from collections.abc import Callable

from phoneauth.core.kv_store import KeyValueStore
from phoneauth.core.observability import log_auth_event
from phoneauth.core.security import hash_otp_code, verify_otp_code

logger = logging.getLogger(__name__)

OTP_KEY_PREFIX = "otp:"
OTP_MIN = 100000
OTP_MAX = 999999
_MAX_VERIFY_ROUNDS = 5


def generate_otp_code() -> str:
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


class OtpChallengeManager:
    """Short-lived, single-use numeric codes keyed by phone number.

    Only an HMAC of the code is stored. A wrong code leaves the challenge alive for
    retries within its TTL; a right code deletes it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        secret: str,
        expiry_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._secret = secret
        self.expiry_seconds = expiry_seconds
        self._clock = clock

    @staticmethod
    def _key(phone_number: str) -> str:
        return f"{OTP_KEY_PREFIX}{phone_number}"

    def issue(self, phone_number: str) -> str:
        code = generate_otp_code()
        record = {
            "code_hash": hash_otp_code(code, self._secret),
            "expires_at": self._clock() + self.expiry_seconds,
            "attempts": 0,
        }
        self._store.set_with_expiry(self._key(phone_number), json.dumps(record), self.expiry_seconds)
        log_auth_event(logger, event="otp.issued", phone=phone_number)
        return code

    def verify(self, phone_number: str, code: str) -> bool:
        """Check `code` and consume the challenge on a match.

        Every write is conditional on the record this call read, so a challenge is
        consumed at most once and a losing writer re-reads instead of overwriting.
        """
        key = self._key(phone_number)
        for _ in range(_MAX_VERIFY_ROUNDS):
            raw = self._store.get(key)
            if raw is None:
                log_auth_event(logger, event="otp.verify", result="not_found", phone=phone_number)
                return False

            try:
                record = json.loads(raw)
                code_hash = record["code_hash"]
                expires_at = float(record["expires_at"])
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding unreadable OTP challenge")
                self._store.compare_and_delete(key, raw)
                return False

            if self._clock() >= expires_at:
                self._store.compare_and_delete(key, raw)
                log_auth_event(logger, event="otp.verify", result="expired", phone=phone_number)
                return False

            if isinstance(code, str) and verify_otp_code(code, code_hash, self._secret):
                if not self._store.compare_and_delete(key, raw):
                    continue
                log_auth_event(logger, event="otp.verify", result="success", phone=phone_number)
                return True

            record["attempts"] = int(record.get("attempts", 0)) + 1
            if not self._store.compare_and_set(key, raw, json.dumps(record)):
                continue
            log_auth_event(
                logger,
                event="otp.verify",
                level=logging.WARNING,
                result="mismatch",
                phone=phone_number,
                attempts=record["attempts"],
            )
            return False

        log_auth_event(logger, event="otp.verify", level=logging.WARNING, result="contended", phone=phone_number)
        return False
