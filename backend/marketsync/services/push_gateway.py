import logging
import os
from threading import Lock
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

_INVALID_TOKEN_MARKERS = ("registration token", "invalid argument", "not registered")


class PushGateway:
    """Device push for notifications through Firebase Cloud Messaging.

    Initialization is lazy and one-shot: without credentials, or if the
    firebase-admin SDK cannot start, the gateway stays disabled and every send
    is a no-op.
    """

    def __init__(self, credentials_path: Optional[str] = None):
        self._credentials_path = (credentials_path or "").strip()
        self._lock = Lock()
        self._initialized = False
        self._messaging = None

    @classmethod
    def from_env(cls) -> "PushGateway":
        return cls(credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH", ""))

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._messaging is not None

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            if not self._credentials_path:
                logger.info("Push gateway disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except ImportError:
                logger.exception("Push gateway disabled: firebase-admin import failed")
                return
            try:
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(self._credentials_path))
            except (ValueError, OSError):
                logger.exception("Push gateway disabled: Firebase init failed")
                return
            self._messaging = messaging
            logger.info("Push gateway initialized")

    def send_notification(self, tokens: List[str], title: str, body: str, data: Dict[str, str]) -> List[str]:
        """Send one multicast message; returns the tokens FCM reported as invalid."""
        self._ensure_initialized()
        if self._messaging is None or not tokens:
            return []
        messaging = self._messaging
        try:
            batch = messaging.send_each_for_multicast(
                messaging.MulticastMessage(
                    notification=messaging.Notification(title=title, body=body),
                    tokens=tokens,
                    data=data,
                )
            )
        except Exception:
            logger.exception("Push send failed")
            return []
        invalid: List[str] = []
        for token, response in zip(tokens, batch.responses):
            if response.success:
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if any(marker in error_text for marker in _INVALID_TOKEN_MARKERS):
                invalid.append(token)
        return invalid
