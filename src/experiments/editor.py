"""Signed, expiring URLs for the live-site visual editor.

A dashboard user launches the editor for one experiment variant; the
live site only enters edit mode when the URL carries a valid signature
issued by this server within the last hour. No session state is kept
server-side unless a token ledger is attached to enforce one-time use.

Payload: "{experiment_id}:{variant_id}:{timestamp_ms}[:{token}]"
Signature: first 16 hex chars of HMAC-SHA256(secret, payload)
"""

import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from src.experiments.errors import EditorSecretMissingError
from src.experiments.settings import EngineSettings

logger = logging.getLogger(__name__)

URL_EXPIRY_MS = 60 * 60 * 1000  # 1 hour
SIGNATURE_HEX_LENGTH = 16
TOKEN_BYTES = 24

PARAM_EXPERIMENT = "__exp_editor"
PARAM_VARIANT = "__variant"
PARAM_TIMESTAMP = "__ts"
PARAM_TOKEN = "__token"
PARAM_SIGNATURE = "__sig"
EDITOR_PARAMS = (PARAM_EXPERIMENT, PARAM_VARIANT, PARAM_TIMESTAMP, PARAM_TOKEN, PARAM_SIGNATURE)

# Callers never learn which check failed
GENERIC_ERROR = "Invalid or expired editor link"


@dataclass(frozen=True)
class EditorUrl:
    url: str
    token: str
    expires_at: int  # epoch milliseconds


@dataclass(frozen=True)
class EditorSignatureCheck:
    valid: bool
    error: str | None = None


@dataclass(frozen=True)
class EditorParams:
    experiment_id: str
    variant_id: str
    timestamp: str
    signature: str
    token: str | None = None


class EditorTokenLedger:
    """Tracks issued editor tokens so each can be redeemed only once."""

    def __init__(self, clock: Callable[[], float] = time.time, prune_every: int = 100):
        self._clock = clock
        self._prune_every = prune_every
        self._registrations = 0
        self._expiry_by_token: dict[str, int] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def register(self, token: str, expires_at: int) -> None:
        """Record an issued token. Expired entries are pruned every `prune_every` registrations."""
        with self._lock:
            self._expiry_by_token[token] = expires_at
            self._registrations += 1
            due = self._registrations % self._prune_every == 0
        if due:
            self.prune()

    def consume(self, token: str) -> bool:
        """Redeem a token; False if unknown, already used, or expired."""
        with self._lock:
            expires_at = self._expiry_by_token.pop(token, None)
        return expires_at is not None and self._now_ms() <= expires_at

    def prune(self) -> int:
        now = self._now_ms()
        with self._lock:
            expired = [t for t, exp in self._expiry_by_token.items() if exp < now]
            for token in expired:
                del self._expiry_by_token[token]
        return len(expired)

    def __len__(self):
        return len(self._expiry_by_token)


class EditorUrlSigner:
    """Issues and verifies editor URLs.

    The secret is resolved on first use, from the argument or from
    EXPERIMENTS_EDITOR_SECRET. A missing secret raises
    EditorSecretMissingError; there is no fallback key.
    """

    def __init__(
        self,
        secret: str | None = None,
        clock: Callable[[], float] = time.time,
        ledger: EditorTokenLedger | None = None,
    ):
        self._secret = secret
        self._clock = clock
        self.ledger = ledger

    def _get_secret(self) -> bytes:
        if not self._secret:
            configured = EngineSettings().editor_secret
            if configured is None or not configured.get_secret_value():
                raise EditorSecretMissingError(
                    "EXPERIMENTS_EDITOR_SECRET must be configured to sign editor URLs"
                )
            self._secret = configured.get_secret_value()
        return self._secret.encode()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def sign(self, experiment_id: str, variant_id: str, timestamp: str, token: str | None = None) -> str:
        payload = f"{experiment_id}:{variant_id}:{timestamp}"
        if token:
            payload = f"{payload}:{token}"
        digest = hmac.new(self._get_secret(), payload.encode(), hashlib.sha256).hexdigest()
        return digest[:SIGNATURE_HEX_LENGTH]

    def generate_editor_url(self, target_url: str, experiment_id: str, variant_id: str) -> EditorUrl:
        """Build a signed editor URL on top of the site's own URL."""
        timestamp = self._now_ms()
        token = secrets.token_hex(TOKEN_BYTES)
        signature = self.sign(experiment_id, variant_id, str(timestamp), token)

        parts = urlsplit(target_url)
        query = [
            (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if k not in EDITOR_PARAMS
        ]
        query += [
            (PARAM_EXPERIMENT, experiment_id),
            (PARAM_VARIANT, variant_id),
            (PARAM_TIMESTAMP, str(timestamp)),
            (PARAM_TOKEN, token),
            (PARAM_SIGNATURE, signature),
        ]
        url = urlunsplit(parts._replace(query=urlencode(query)))

        expires_at = timestamp + URL_EXPIRY_MS
        if self.ledger is not None:
            self.ledger.register(token, expires_at)
        logger.info("Issued editor URL for experiment %s variant %s", experiment_id, variant_id)
        return EditorUrl(url=url, token=token, expires_at=expires_at)

    def _reject(self, reason: str, experiment_id: str, variant_id: str) -> EditorSignatureCheck:
        logger.warning(
            "Rejected editor URL (%s) for experiment %s variant %s",
            reason, experiment_id, variant_id,
        )
        return EditorSignatureCheck(valid=False, error=GENERIC_ERROR)

    def validate_editor_signature(
        self,
        experiment_id: str,
        variant_id: str,
        timestamp: str,
        signature: str,
        token: str | None = None,
    ) -> EditorSignatureCheck:
        """Check an editor URL's signature and age.

        The signature is recomputed over the exact same payload and compared
        in constant time. Links older than an hour, or dated in the future,
        are rejected.
        """
        try:
            issued_at = int(timestamp)
        except (TypeError, ValueError):
            return self._reject("unparseable timestamp", experiment_id, variant_id)

        age = self._now_ms() - issued_at
        if age > URL_EXPIRY_MS:
            return self._reject("expired", experiment_id, variant_id)
        if age < 0:
            return self._reject("timestamp in the future", experiment_id, variant_id)

        expected = self.sign(experiment_id, variant_id, str(timestamp), token)
        if not isinstance(signature, str) or not hmac.compare_digest(
            signature.encode(), expected.encode()
        ):
            return self._reject("bad signature", experiment_id, variant_id)

        if self.ledger is not None and (not token or not self.ledger.consume(token)):
            return self._reject("token already used", experiment_id, variant_id)

        return EditorSignatureCheck(valid=True)

    def validate_editor_url(self, url: str) -> EditorSignatureCheck:
        params = parse_editor_params(url)
        if params is None:
            logger.warning("Rejected editor URL (missing parameters)")
            return EditorSignatureCheck(valid=False, error=GENERIC_ERROR)
        return self.validate_editor_signature(
            params.experiment_id,
            params.variant_id,
            params.timestamp,
            params.signature,
            params.token,
        )


def parse_editor_params(url: str) -> EditorParams | None:
    """Pull the editor parameters out of a URL; None if any are missing."""
    query = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
    required = (PARAM_EXPERIMENT, PARAM_VARIANT, PARAM_TIMESTAMP, PARAM_SIGNATURE)
    if not all(query.get(name) for name in required):
        return None
    return EditorParams(
        experiment_id=query[PARAM_EXPERIMENT],
        variant_id=query[PARAM_VARIANT],
        timestamp=query[PARAM_TIMESTAMP],
        signature=query[PARAM_SIGNATURE],
        token=query.get(PARAM_TOKEN) or None,
    )


_default_signer: EditorUrlSigner | None = None
_default_signer_lock = threading.Lock()


def get_default_signer() -> EditorUrlSigner:
    global _default_signer
    with _default_signer_lock:
        if _default_signer is None:
            _default_signer = EditorUrlSigner()
        return _default_signer


def generate_editor_url(target_url: str, experiment_id: str, variant_id: str) -> EditorUrl:
    return get_default_signer().generate_editor_url(target_url, experiment_id, variant_id)


def validate_editor_signature(
    experiment_id: str,
    variant_id: str,
    timestamp: str,
    signature: str,
    token: str | None = None,
) -> EditorSignatureCheck:
    return get_default_signer().validate_editor_signature(
        experiment_id, variant_id, timestamp, signature, token,
    )
