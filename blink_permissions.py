"""
BlinkMore Engine -- Camera Permissions
=======================================
PermissionsProvider contract consumed by the engine, plus two
implementations:

  StaticPermissions       fixed answer (tests, headless runs)
  PromptingPermissions    asks a prompt callable once; concurrent
                          requests while undecided share that one prompt

The engine never sets up capture unless check_access() is AUTHORIZED.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional


_log = logging.getLogger("BlinkPermissions")


class AuthorizationStatus(Enum):
    AUTHORIZED = "authorized"
    DENIED = "denied"
    NOT_DETERMINED = "not_determined"


AccessCallback = Callable[[bool], None]


class PermissionsProvider(ABC):

    @abstractmethod
    def check_access(self) -> AuthorizationStatus:
        raise NotImplementedError

    @abstractmethod
    def request_access(self, callback: AccessCallback) -> None:
        """Ask for access; callback(granted) may run on any thread."""
        raise NotImplementedError

    def wait_for_access(self, timeout: Optional[float] = None) -> bool:
        """Blocking request. False on denial or timeout."""
        done = threading.Event()
        answer = {"granted": False}

        def _on_answer(granted: bool) -> None:
            answer["granted"] = bool(granted)
            done.set()

        self.request_access(_on_answer)
        if not done.wait(timeout):
            _log.warning("Camera permission request timed out")
            return False
        return answer["granted"]


class StaticPermissions(PermissionsProvider):
    """Fixed status; a request while NOT_DETERMINED resolves to `grant_on_request`."""

    def __init__(self, status: AuthorizationStatus = AuthorizationStatus.AUTHORIZED,
                 grant_on_request: bool = True) -> None:
        self._status = status
        self._grant = grant_on_request
        self.requests = 0

    def check_access(self) -> AuthorizationStatus:
        return self._status

    def request_access(self, callback: AccessCallback) -> None:
        self.requests += 1
        if self._status is AuthorizationStatus.NOT_DETERMINED:
            self._status = (AuthorizationStatus.AUTHORIZED if self._grant
                            else AuthorizationStatus.DENIED)
        callback(self._status is AuthorizationStatus.AUTHORIZED)


class PromptingPermissions(PermissionsProvider):
    """Runs `prompt()` on a worker thread at most once per undecided period.

    Callbacks registered while a prompt is in flight are queued and all
    receive the same answer.
    """

    def __init__(self, prompt: Callable[[], bool],
                 status: AuthorizationStatus = AuthorizationStatus.NOT_DETERMINED) -> None:
        self._prompt = prompt
        self._status = status
        self._lock = threading.Lock()
        self._pending: list[AccessCallback] = []
        self.prompts_shown = 0

    def check_access(self) -> AuthorizationStatus:
        return self._status

    def request_access(self, callback: AccessCallback) -> None:
        with self._lock:
            if self._status is not AuthorizationStatus.NOT_DETERMINED:
                granted = self._status is AuthorizationStatus.AUTHORIZED
            else:
                self._pending.append(callback)
                if len(self._pending) > 1:
                    return
                self.prompts_shown += 1
                threading.Thread(target=self._run_prompt, name="BlinkPermissionPrompt",
                                 daemon=True).start()
                return
        callback(granted)

    def _run_prompt(self) -> None:
        try:
            granted = bool(self._prompt())
        except Exception:
            _log.exception("Permission prompt failed -- treating as denied")
            granted = False
        with self._lock:
            self._status = (AuthorizationStatus.AUTHORIZED if granted
                            else AuthorizationStatus.DENIED)
            waiting, self._pending = self._pending, []
        _log.info("Camera permission %s (%d waiting request(s))",
                  "granted" if granted else "denied", len(waiting))
        for cb in waiting:
            try:
                cb(granted)
            except Exception:
                _log.exception("Permission callback failed")

    def reset(self) -> None:
        """Forget the decision, e.g. after the user changed system settings."""
        with self._lock:
            self._status = AuthorizationStatus.NOT_DETERMINED


def permissions_from_config(value: Optional[str]) -> PermissionsProvider:
    """'authorized' / 'denied' / 'not_determined' -> StaticPermissions."""
    status = AuthorizationStatus(value) if value else AuthorizationStatus.AUTHORIZED
    return StaticPermissions(status)
