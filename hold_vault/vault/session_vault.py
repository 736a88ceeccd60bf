"""
SessionVault — Lock state machine owning the key material of a session.

States and transitions::

    LOGGED_OUT ──restore()──▶ LOGGED_IN_LOCKED ──unlock()──▶ UNLOCKED
    LOGGED_OUT ──login()/signup()────────────────────────▶ UNLOCKED
    UNLOCKED ──lock()──▶ LOGGED_IN_LOCKED
    any ──logout()──▶ LOGGED_OUT

Keys are only ever derived for an identity the authenticator has verified,
since the per-user salt comes from that identity. Only one derivation runs
per vault at a time; concurrent unlock calls queue behind it.

Security Note:
    Never log passwords or key material. Only log identities and states.
    ``KeyMaterial`` lives in process memory while unlocked and is destroyed
    on lock and logout.
"""
import asyncio
import hmac
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from ..exceptions import (
    AuthenticationError,
    KeyDerivationError,
    LockedStateError,
    StateTransitionError,
    UnlockError,
    WeakPasswordError,
)
from ..pwned import PwnedCheckResult, check_pwned_password
from .config import VaultConfig
from .keys import KeyDerivationService, KeyMaterial

logger = logging.getLogger("hold_vault.vault")


class VaultState(str, Enum):
    LOGGED_OUT = "logged_out"
    LOGGED_IN_LOCKED = "logged_in_locked"
    UNLOCKED = "unlocked"


@dataclass(frozen=True)
class Identity:
    """A user identity verified by the remote authenticator."""
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class Authenticator(Protocol):
    """Remote identity provider. Raises AuthenticationError on rejection."""

    async def sign_in(self, email: str, password: str) -> Identity: ...

    async def sign_up(self, email: str, password: str, display_name: str) -> Identity: ...

    async def sign_out(self) -> None: ...


PwnedChecker = Callable[[str], Awaitable[PwnedCheckResult]]


class SessionVault:
    """Vault bound to one client session.

    The reconciler reads ``keys`` (never mutates them); everything that
    changes the lock state goes through this class.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        config: Optional[VaultConfig] = None,
        deriver: Optional[KeyDerivationService] = None,
        pwned_checker: Optional[PwnedChecker] = None,
    ):
        self._auth = authenticator
        self.config = config or VaultConfig()
        self._deriver = deriver or KeyDerivationService(self.config)
        self._pwned_checker = pwned_checker
        self._state = VaultState.LOGGED_OUT
        self._identity: Optional[Identity] = None
        self._keys: Optional[KeyMaterial] = None
        self._derive_lock = asyncio.Lock()
        self._inflight_unlock: Optional[tuple[bytes, asyncio.Future]] = None

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        return self._state

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def keys(self) -> Optional[KeyMaterial]:
        return self._keys

    @property
    def is_locked(self) -> bool:
        """Authenticated but holding no key material."""
        return self._state == VaultState.LOGGED_IN_LOCKED

    def require_keys(self) -> KeyMaterial:
        """Return the key material or fail.

        Raises:
            LockedStateError: the vault is not unlocked.
        """
        if self._keys is None:
            raise LockedStateError("Vault is locked. Cannot use encrypted data.")
        return self._keys

    def require_identity(self) -> Identity:
        if self._identity is None:
            raise LockedStateError("No authenticated user")
        return self._identity

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def restore(self, identity: Identity) -> None:
        """Adopt an identity restored from a previous session (no password)."""
        if self._state != VaultState.LOGGED_OUT:
            raise StateTransitionError(
                f"Cannot restore a session from state {self._state.value}"
            )
        self._identity = identity
        self._state = VaultState.LOGGED_IN_LOCKED
        logger.info("Session restored (locked): user=%s", identity.uid)

    async def login(self, email: str, password: str) -> Identity:
        """Authenticate and derive keys.

        Raises:
            AuthenticationError: credentials rejected.
            UnlockError: key derivation failed.
        """
        async with self._derive_lock:
            identity = await self._auth.sign_in(email, password)
            self._adopt(identity)
            await self._derive(password, identity)
        logger.info("Login: user=%s", identity.uid)
        return identity

    async def signup(self, email: str, password: str, display_name: str) -> Identity:
        """Create the account and derive keys.

        Raises:
            WeakPasswordError: password found in the breach corpus (when enabled).
            AuthenticationError: account creation rejected.
            UnlockError: key derivation failed.
        """
        if self.config.reject_pwned_passwords:
            result = await self._check_pwned(password)
            if result.is_pwned:
                raise WeakPasswordError(result.count)
        async with self._derive_lock:
            identity = await self._auth.sign_up(email, password, display_name)
            self._adopt(identity)
            await self._derive(password, identity)
        logger.info("Signup: user=%s", identity.uid)
        return identity

    async def unlock(self, password: str) -> None:
        """Re-authenticate the current user and re-derive key material.

        A call made while an unlock with the same password is in flight
        waits for that one instead of deriving again; any other call
        queues behind it.

        Raises:
            LockedStateError: nobody is logged in.
            UnlockError: wrong password, or the service failed.
        """
        if self._state == VaultState.LOGGED_OUT:
            raise LockedStateError("No user to unlock")
        secret = password.encode("utf-8")
        inflight = self._inflight_unlock
        if inflight is not None and hmac.compare_digest(inflight[0], secret):
            logger.debug("Unlock already in flight; joining it")
            await asyncio.shield(inflight[1])
            return
        task = asyncio.ensure_future(self._unlock(password))
        self._inflight_unlock = (secret, task)
        try:
            await task
        finally:
            if self._inflight_unlock is not None and self._inflight_unlock[1] is task:
                self._inflight_unlock = None

    async def _unlock(self, password: str) -> None:
        async with self._derive_lock:
            identity = self._identity
            if identity is None:
                raise LockedStateError("Session ended before unlock")
            if not identity.email:
                raise UnlockError("User email missing")
            try:
                await self._auth.sign_in(identity.email, password)
            except AuthenticationError as err:
                logger.warning("Unlock rejected: user=%s", identity.uid)
                raise UnlockError() from err
            await self._derive(password, identity)
        logger.info("Vault unlocked: user=%s", identity.uid)

    def lock(self) -> None:
        """Drop the key material but keep the authenticated identity."""
        if self._state != VaultState.UNLOCKED:
            return
        self._drop_keys()
        self._state = VaultState.LOGGED_IN_LOCKED
        logger.info("Vault locked: user=%s", self._identity.uid if self._identity else None)

    async def logout(self) -> None:
        """Discard key material and identity, then sign out remotely.

        Keys are destroyed before the remote call, whatever its outcome.
        """
        uid = self._identity.uid if self._identity else None
        self._drop_keys()
        self._identity = None
        self._state = VaultState.LOGGED_OUT
        try:
            await self._auth.sign_out()
        except Exception as err:
            logger.error("Remote sign-out failed for user=%s: %s", uid, err)
            raise
        logger.info("Logout: user=%s", uid)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _adopt(self, identity: Identity) -> None:
        if self._identity is not None and self._identity.uid != identity.uid:
            self._drop_keys()
        self._identity = identity
        if self._state == VaultState.LOGGED_OUT:
            self._state = VaultState.LOGGED_IN_LOCKED

    async def _derive(self, password: str, identity: Identity) -> None:
        try:
            material = await self._deriver.derive_key_material(password, identity.uid)
        except KeyDerivationError as err:
            logger.error("Key derivation failed for user=%s: %s", identity.uid, err)
            raise UnlockError() from err
        if self._identity is not identity:
            # logout (or another login) happened while deriving
            material.destroy()
            raise LockedStateError("Session ended during key derivation")
        previous = self._keys
        self._keys = material
        self._state = VaultState.UNLOCKED
        if previous is not None and previous is not material:
            previous.destroy()

    def _drop_keys(self) -> None:
        if self._keys is not None:
            self._keys.destroy()
            self._keys = None

    async def _check_pwned(self, password: str) -> PwnedCheckResult:
        if self._pwned_checker is not None:
            return await self._pwned_checker(password)
        return await check_pwned_password(
            password,
            api_url=self.config.pwned_api_url,
            timeout=self.config.pwned_timeout,
        )
