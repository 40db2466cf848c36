"""Session manager: the only component that creates or destroys the auth token."""
import logging
from enum import Enum
from typing import Any, Dict, Optional

from shopsync.api.client import CommerceApiClient
from shopsync.api.errors import (
    AuthorizationError,
    CommerceApiError,
    ConflictError,
    NetworkError,
    NotFoundError,
)
from shopsync.data.schemas import Role, Session
from shopsync.storage.kv import SESSION_KEYS, TOKEN_KEY, USER_ID_KEY, KeyValueStore
from shopsync.utils.events import CartUpdate, ChangeReason, Event, EventChannel, SessionChange
from shopsync.utils.log import mask_token
from shopsync.utils.token import TokenIdentity, decode_token_identity

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    CREDENTIAL = "credential"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    OTHER = "other"


BAD_CREDENTIALS_MESSAGE = "Invalid email or password. Please try again."
NO_SUCH_USER_MESSAGE = "User not found. Please check your email or register."
NETWORK_MESSAGE = "Network error. Please check your connection and try again."
LOGIN_FAILED_MESSAGE = "Login failed. Please try again later."
UNEXPECTED_LOGIN_RESPONSE_MESSAGE = "Invalid credentials - unexpected response format"
LIMITED_LOGIN_MESSAGE = "Login successful but failed to fetch user data. Some features may be limited."
EMAIL_TAKEN_MESSAGE = "Email already exists. Please use a different email."
UNEXPECTED_MESSAGE = "An unexpected error occurred. Please try again."


def profile_user_id(profile: Dict[str, Any]) -> Optional[str]:
    """Extract the user id from a /auth/me profile."""
    for key in ("_id", "id", "userId"):
        value = profile.get(key)
        if value:
            return str(value)
    return None


class SessionManager:
    """
    Owns who is signed in.

    Every public operation catches its own failures and reports them through
    `error`/`error_kind` and the returned result dict, so callers never need a
    try block. Session transitions are announced on the event channel as
    SESSION_CHANGED.
    """

    def __init__(
        self,
        client: CommerceApiClient,
        storage: KeyValueStore,
        channel: EventChannel,
        refresh_signal=None
    ):
        """
        Initialize the session manager.

        Args:
            client: Commerce API client; its bearer token is managed here
            storage: Persistent key-value store
            channel: Event channel for session and cart notifications
            refresh_signal: Optional AppRefreshSignal triggered after login
        """
        self.client = client
        self.storage = storage
        self.channel = channel
        self.refresh_signal = refresh_signal
        self.session = Session()
        self.is_loading = False
        self.error: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id

    @property
    def is_authenticated(self) -> bool:
        return self.session.is_authenticated

    @property
    def is_admin(self) -> bool:
        return self.session.role == Role.ADMIN

    def _set_error(self, kind: Optional[ErrorKind], message: Optional[str]) -> None:
        self.error_kind = kind
        self.error = message

    def _fail(self, kind: ErrorKind, message: str) -> Dict[str, Any]:
        self._set_error(kind, message)
        logger.warning(f"[SESSION] {kind.value}: {message}")
        return {"success": False, "message": message, "error_kind": kind.value}

    def _populate(self, token: str, profile: Dict[str, Any]) -> None:
        user_id = profile_user_id(profile)
        if user_id is None:
            raise CommerceApiError("Profile has no user id", payload=profile)
        details = {k: v for k, v in profile.items() if k != "token"}
        self.session = Session(
            token=token,
            user_id=user_id,
            role=Role.parse(profile.get("role")),
            profile=details,
            degraded=False,
        )

    def _populate_from_identity(self, token: str, identity: TokenIdentity) -> None:
        profile = {"_id": identity.user_id}
        if identity.email:
            profile["email"] = identity.email
        if identity.name:
            profile["name"] = identity.name
        self.session = Session(
            token=token,
            user_id=identity.user_id,
            role=Role.parse(identity.role) or Role.USER,
            profile=profile,
            degraded=True,
        )

    async def _publish(self, reason: ChangeReason, previous_user_id: Optional[str]) -> None:
        change = SessionChange(reason=reason, previous_user_id=previous_user_id, user_id=self.session.user_id)
        await self.channel.emit(Event.SESSION_CHANGED, change)

    async def _discard_token(self) -> None:
        self.client.clear_token()
        await self.storage.remove_many(*SESSION_KEYS)
        self.session = Session()

    async def _force_clear(self) -> None:
        """Remove the minimum session state, whatever fails along the way."""
        self.client.clear_token()
        for key in SESSION_KEYS:
            try:
                await self.storage.remove(key)
            except Exception as e:
                logger.error(f"[SESSION] Could not remove '{key}' during forced logout: {e}")
        self.session = Session()

    async def restore_session(self) -> Session:
        """
        Rebuild the session from a persisted token at startup.

        The profile endpoint is authoritative. If it is unreachable or failing,
        identity is taken from the token payload instead so the app stays usable;
        only an explicit 401 discards the token.
        """
        previous_user_id = self.session.user_id
        try:
            token = await self.storage.get(TOKEN_KEY)
            if not token:
                logger.info("[SESSION] No stored token, continuing as guest")
                return self.session

            logger.info(f"[SESSION] Checking user login with token: {mask_token(token)}")
            self.client.set_token(token)
            try:
                self._populate(token, await self.client.get_me())
                await self.storage.set(USER_ID_KEY, self.session.user_id)
            except AuthorizationError:
                logger.warning("[SESSION] Stored token was rejected, discarding it")
                await self._discard_token()
            except CommerceApiError as e:
                identity = decode_token_identity(token)
                if identity is None:
                    logger.warning(f"[SESSION] Profile unavailable ({e}) and token unreadable, discarding it")
                    await self._discard_token()
                else:
                    logger.warning(f"[SESSION] Profile unavailable ({e}), using identity from token")
                    self._populate_from_identity(token, identity)
        except Exception:
            logger.exception("[SESSION] Error restoring session")
            await self._force_clear()

        await self._publish(ChangeReason.RESTORE, previous_user_id)
        return self.session

    async def _push_cart(self, user_id: str) -> None:
        try:
            lines = await self.client.get_cart(user_id)
        except CommerceApiError as e:
            logger.error(f"[SESSION] Could not fetch cart after login: {e}")
            lines = []
        await self.channel.emit(Event.CART_UPDATED, CartUpdate(user_id=user_id, lines=lines))

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Authenticate and switch the whole client to the new user.

        When this returns successfully, the cart store already holds the new
        user's server cart and the app refresh flag is set.

        Returns:
            Dictionary with success flag and message
        """
        self.is_loading = True
        self._set_error(None, None)
        try:
            if not (email or "").strip() or not password:
                return self._fail(ErrorKind.VALIDATION, "Please enter both email and password.")

            previous_user_id = self.session.user_id
            await self.channel.emit(Event.LOGIN_STARTED, previous_user_id)

            # Nothing of a previous user may survive into the new session
            had_session = self.session.is_authenticated
            await self._force_clear()
            if had_session:
                logger.info(f"[SESSION] Cleared session of {previous_user_id} before login")
                await self._publish(ChangeReason.LOGOUT, previous_user_id)
                previous_user_id = None

            logger.info(f"[SESSION] Attempting login with: {email}")
            response = await self.client.login(email, password)
            nested_user = response.get("user") if isinstance(response.get("user"), dict) else {}
            token = response.get("token") or nested_user.get("token")
            if not token:
                logger.error(f"[SESSION] No token in login response: {sorted(response)}")
                return self._fail(ErrorKind.CREDENTIAL, UNEXPECTED_LOGIN_RESPONSE_MESSAGE)

            await self.storage.set(TOKEN_KEY, token)
            self.client.set_token(token)

            warning = None
            try:
                self._populate(token, await self.client.get_me())
            except CommerceApiError as e:
                logger.error(f"[SESSION] Error fetching user data: {e}")
                warning = LIMITED_LOGIN_MESSAGE
                identity = decode_token_identity(token)
                if identity is not None:
                    self._populate_from_identity(token, identity)
                else:
                    self.session = Session(
                        token=token,
                        role=Role.USER,
                        profile={"email": email, "name": "User"},
                        degraded=True,
                    )

            if self.session.user_id:
                await self.storage.set(USER_ID_KEY, self.session.user_id)
            if not self.session.degraded:
                await self._push_cart(self.session.user_id)

            if self.refresh_signal is not None:
                await self.refresh_signal.trigger()

            await self._publish(ChangeReason.LOGIN, previous_user_id)
            if warning:
                self._set_error(ErrorKind.OTHER, warning)
            logger.info(f"[SESSION] Logged in as {self.session.user_id}")
            return {"success": True, "message": warning or "Login successful"}

        except AuthorizationError:
            return self._fail(ErrorKind.CREDENTIAL, BAD_CREDENTIALS_MESSAGE)
        except NotFoundError:
            return self._fail(ErrorKind.NOT_FOUND, NO_SUCH_USER_MESSAGE)
        except NetworkError:
            return self._fail(ErrorKind.NETWORK, NETWORK_MESSAGE)
        except CommerceApiError as e:
            return self._fail(ErrorKind.OTHER, e.server_message or LOGIN_FAILED_MESSAGE)
        except Exception:
            logger.exception("[SESSION] Login error")
            await self._force_clear()
            return self._fail(ErrorKind.OTHER, UNEXPECTED_MESSAGE)
        finally:
            self.is_loading = False

    async def register(self, name: str, email: str, password: str) -> Dict[str, Any]:
        """
        Create an account. Never signs the user in; the caller routes to login.

        Returns:
            Dictionary with success flag and message
        """
        self.is_loading = True
        self._set_error(None, None)
        try:
            if not (name or "").strip() or not (email or "").strip() or not password:
                return self._fail(ErrorKind.VALIDATION, "Please fill in all fields.")

            logger.info(f"[SESSION] Attempting registration with: {email}")
            response = await self.client.register(name, email, password, role=Role.USER.value)
            if response.get("token") or response.get("success"):
                return {"success": True, "message": "Registration successful. Please log in."}
            logger.error(f"[SESSION] No token or success in registration response: {sorted(response)}")
            return self._fail(ErrorKind.OTHER, "Registration failed - unexpected response format")

        except ConflictError:
            return self._fail(ErrorKind.CONFLICT, EMAIL_TAKEN_MESSAGE)
        except NetworkError:
            return self._fail(ErrorKind.NETWORK, NETWORK_MESSAGE)
        except CommerceApiError as e:
            return self._fail(
                ErrorKind.OTHER,
                e.server_message or f"Registration failed ({e.status_code}). Please try again.",
            )
        except Exception as e:
            logger.exception("[SESSION] Registration error")
            return self._fail(ErrorKind.OTHER, f"An unexpected error occurred: {e}")
        finally:
            self.is_loading = False

    async def logout(self) -> Dict[str, Any]:
        """
        Sign out. The local outcome always succeeds, whatever the server says.

        Returns:
            Dictionary with success flag and message
        """
        self.is_loading = True
        previous_user_id = self.session.user_id
        try:
            try:
                await self.client.logout()
            except CommerceApiError as e:
                logger.warning(f"[SESSION] Server logout failed, logging out locally: {e}")
            self.client.clear_token()
            await self.storage.remove_many(*SESSION_KEYS)
            self.session = Session()
        except Exception:
            logger.exception("[SESSION] Logout error, forcing local cleanup")
            await self._force_clear()
        finally:
            self.is_loading = False

        await self._publish(ChangeReason.LOGOUT, previous_user_id)
        return {"success": True, "message": "Logged out"}

    async def expire_session(self) -> None:
        """Drop a session whose token the server rejected during normal use."""
        previous_user_id = self.session.user_id
        logger.warning(f"[SESSION] Token rejected for user {previous_user_id}, logging out")
        await self._force_clear()
        await self._publish(ChangeReason.EXPIRED, previous_user_id)

    async def reconcile_user_id(self, user_id: str) -> bool:
        """
        Adopt a user id reported by the server when it differs from the cached one.

        Returns:
            True if the cached identity changed
        """
        if await self.storage.get(USER_ID_KEY) != user_id:
            await self.storage.set(USER_ID_KEY, user_id)
        previous_user_id = self.session.user_id
        if previous_user_id == user_id:
            return False
        logger.warning(f"[SESSION] User id drifted from {previous_user_id} to {user_id}")
        self.session.user_id = user_id
        self.session.profile["_id"] = user_id
        await self._publish(ChangeReason.USER_DRIFT, previous_user_id)
        return True

    async def update_profile(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update profile fields. The token is always kept, whatever the response holds.

        Returns:
            Dictionary with success flag, message and the merged profile
        """
        self.is_loading = True
        try:
            token = self.session.token or await self.storage.get(TOKEN_KEY)
            if not token:
                return self._fail(ErrorKind.AUTHORIZATION, "Authentication token is missing")
            if self.client.token != token:
                self.client.set_token(token)

            response = await self.client.update_profile({**data, "userId": self.session.user_id})
            merged = {**self.session.profile, **{k: v for k, v in response.items() if k != "token"}}
            self.session.profile = merged
            self.session.token = token
            if "role" in response:
                self.session.role = Role.parse(response.get("role")) or self.session.role
            return {"success": True, "message": "Profile updated", "profile": merged}

        except NetworkError:
            return self._fail(ErrorKind.NETWORK, NETWORK_MESSAGE)
        except AuthorizationError as e:
            return self._fail(ErrorKind.AUTHORIZATION, e.server_message or "Failed to update profile")
        except CommerceApiError as e:
            return self._fail(ErrorKind.OTHER, e.server_message or "Failed to update profile")
        except Exception:
            logger.exception("[SESSION] Error updating profile")
            return self._fail(ErrorKind.OTHER, "Failed to update profile")
        finally:
            self.is_loading = False
