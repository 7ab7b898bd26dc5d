"""Store-and-forward notifications with live delivery to connected clients."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from sqlalchemy.orm import Session

from inventory_backend.core.exceptions import AuthenticationError, ResourceNotFoundError, TokenRevokedError
from inventory_backend.core.security import token_fingerprint
from inventory_backend.models.notification import Notification
from inventory_backend.models.token import Token, TokenType
from inventory_backend.models.user import Role, User
from inventory_backend.schemas.events import RequestContext, SecurityEvent, Severity, TokenDetails
from inventory_backend.schemas.notification import (
    BroadcastResult,
    NotificationCreate,
    NotificationPage,
    NotificationResponse,
)
from inventory_backend.services.audit_service import AuditService
from inventory_backend.services.token_service import TokenService

logger = logging.getLogger(__name__)

UNSEEN_BATCH_SIZE = 50

EVENT_NEW_NOTIFICATION = "new:notification"
EVENT_NOTIFICATIONS = "notifications"
EVENT_ERROR = "error"
EVENT_GET_NOTIFICATIONS = "get:notifications"
EVENT_MARK_SEEN = "mark:seen"
EVENT_MARK_READ = "mark:read"


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ConnectionRegistry:
    """
    Maps user ids to the ids of their live connections.

    Mutated only from the event loop thread, so add and remove never
    interleave within a single call.
    """

    def __init__(self) -> None:
        self._by_user: Dict[str, Set[str]] = {}
        self._connections: Dict[str, Connection] = {}

    def add(self, user_id: str, connection_id: str, connection: Connection) -> None:
        self._connections[connection_id] = connection
        self._by_user.setdefault(user_id, set()).add(connection_id)

    def remove(self, user_id: str, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        ids = self._by_user.get(user_id)
        if ids is None:
            return
        ids.discard(connection_id)
        if not ids:
            del self._by_user[user_id]

    def connection_ids(self, user_id: str) -> Set[str]:
        return set(self._by_user.get(user_id, ()))

    def connections_for(self, user_id: str) -> List[Connection]:
        return [self._connections[cid] for cid in self.connection_ids(user_id) if cid in self._connections]

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def users(self) -> List[str]:
        return list(self._by_user)

    def __len__(self) -> int:
        return len(self._connections)


@dataclass
class AuthenticatedConnection:
    user: User
    token_id: str


def serialize(notification: Notification) -> Dict[str, Any]:
    return NotificationResponse.model_validate(notification).model_dump(mode="json")


class NotificationGateway:
    """Persist notifications and push them to every live connection of the recipient."""

    def __init__(self, tokens: TokenService, registry: ConnectionRegistry, audit: AuditService) -> None:
        self.tokens = tokens
        self.registry = registry
        self.audit = audit

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def _reject(self, db: Session, reason: str, context: Optional[RequestContext], user_id: Optional[str] = None) -> None:
        self.audit.log_security_event(
            db,
            user_id=user_id,
            event=SecurityEvent.REALTIME_AUTH_FAILED,
            details=TokenDetails(expected_type=TokenType.ACCESS.value, reason=reason),
            severity=Severity.WARNING,
            context=context,
        )

    def authenticate_connection(
        self, db: Session, token: Optional[str], context: Optional[RequestContext] = None
    ) -> AuthenticatedConnection:
        """
        Validate the handshake token before any traffic is accepted.

        Raises:
            AuthenticationError: Missing, invalid, revoked or foreign token, or disabled user
        """
        if not token:
            self._reject(db, "missing", context)
            raise AuthenticationError("Authentication error: Token required")

        try:
            payload = self.tokens.verify(token, TokenType.ACCESS)
        except AuthenticationError as exc:
            self._reject(db, exc.message, context)
            raise

        record = db.query(Token).filter(Token.id == payload.get("jti")).first()
        if (
            record is None
            or record.token_hash != token_fingerprint(token)
            or not record.is_usable(TokenType.ACCESS)
        ):
            self._reject(db, "revoked", context, user_id=record.user_id if record else None)
            raise TokenRevokedError()

        user = db.query(User).filter(User.id == record.user_id).first()
        if user is None or not user.can_authenticate:
            self._reject(db, "inactive_user", context, user_id=record.user_id)
            raise AuthenticationError("User account is disabled")
        return AuthenticatedConnection(user=user, token_id=record.id)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _push(self, user_id: str, frame: Dict[str, Any]) -> int:
        delivered = 0
        for connection in self.registry.connections_for(user_id):
            try:
                await connection.send_json(frame)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning("Live delivery to user %s failed: %s", user_id, exc)
        return delivered

    async def send_notification(self, db: Session, data: NotificationCreate) -> Notification:
        """
        Persist first, then push ``new:notification`` to the recipient's live connections.

        A recipient with no live connection simply finds the row on the next fetch.
        """
        if not data.recipient_id:
            raise ValueError("recipient_id is required")

        notification = Notification(
            type=data.type.value,
            message=data.message,
            recipient_id=data.recipient_id,
            order_id=data.order_id,
            payload_json=json.dumps(data.payload) if data.payload is not None else None,
        )
        db.add(notification)
        db.commit()
        db.refresh(notification)

        frame = {"event": EVENT_NEW_NOTIFICATION, "data": serialize(notification)}
        await self._push(notification.recipient_id, frame)
        return notification

    def _recipients(self, db: Session, roles: Optional[Iterable[Role]]) -> List[str]:
        query = db.query(User.id).filter(User.is_active == True, User.deleted_at.is_(None))  # noqa: E712
        role_values = [Role(r).value for r in roles or ()]
        if role_values:
            query = query.filter(User.role.in_(role_values))
        return [row.id for row in query.all()]

    async def broadcast_notification(
        self, db: Session, data: NotificationCreate, roles: Optional[Iterable[Role]] = None
    ) -> BroadcastResult:
        """
        Send one notification per active user, optionally limited to ``roles``.

        Recipients are handled concurrently; a failure for one recipient is
        logged and reported in ``failed`` without affecting the others.
        """
        recipient_ids = self._recipients(db, roles)

        async def deliver(recipient_id: str) -> None:
            item = data.model_copy(update={"recipient_id": recipient_id})
            try:
                await self.send_notification(db, item)
            except Exception:
                db.rollback()
                raise

        results = await asyncio.gather(*(deliver(rid) for rid in recipient_ids), return_exceptions=True)

        failed = []
        for recipient_id, result in zip(recipient_ids, results):
            if isinstance(result, BaseException):
                logger.error("Broadcast to user %s failed: %s", recipient_id, result)
                failed.append(recipient_id)
        logger.info("Broadcast %s delivered to %d of %d user(s)", data.type.value, len(recipient_ids) - len(failed), len(recipient_ids))
        return BroadcastResult(delivered=len(recipient_ids) - len(failed), failed=failed)

    # ------------------------------------------------------------------
    # Retrieval and flags
    # ------------------------------------------------------------------

    def get_unseen(self, db: Session, user_id: str, limit: int = UNSEEN_BATCH_SIZE) -> List[Notification]:
        return (
            db.query(Notification)
            .filter(Notification.recipient_id == user_id, Notification.seen == False)  # noqa: E712
            .order_by(Notification.created_at.desc())
            .limit(limit)
            .all()
        )

    def list_notifications(
        self,
        db: Session,
        user_id: str,
        *,
        seen: Optional[bool] = None,
        read: Optional[bool] = None,
        limit: int = 20,
        page: int = 1,
    ) -> NotificationPage:
        query = db.query(Notification).filter(Notification.recipient_id == user_id)
        if seen is not None:
            query = query.filter(Notification.seen == seen)
        if read is not None:
            query = query.filter(Notification.read == read)

        count = query.count()
        items = (
            query.order_by(Notification.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return NotificationPage(
            notifications=[NotificationResponse.model_validate(n) for n in items],
            count=count,
            pages=math.ceil(count / limit) if limit else 0,
            current_page=page,
        )

    def _owned(self, db: Session, user_id: str, notification_id: str) -> Notification:
        notification = (
            db.query(Notification)
            .filter(Notification.id == notification_id, Notification.recipient_id == user_id)
            .first()
        )
        if notification is None:
            raise ResourceNotFoundError("Notification")
        return notification

    def mark_seen(self, db: Session, user_id: str, notification_id: str) -> Notification:
        notification = self._owned(db, user_id, notification_id)
        notification.seen = True
        db.commit()
        db.refresh(notification)
        return notification

    def mark_read(self, db: Session, user_id: str, notification_id: str) -> Notification:
        """Reading implies seeing."""
        notification = self._owned(db, user_id, notification_id)
        notification.read = True
        notification.seen = True
        db.commit()
        db.refresh(notification)
        return notification

    def mark_all_seen(self, db: Session, user_id: str) -> int:
        updated = (
            db.query(Notification)
            .filter(Notification.recipient_id == user_id, Notification.seen == False)  # noqa: E712
            .update({Notification.seen: True}, synchronize_session=False)
        )
        db.commit()
        return updated

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def handle_event(self, db: Session, user_id: str, message: Any) -> Optional[Dict[str, Any]]:
        """
        Apply one client frame ``{"event": ..., "id": ...}``.

        Returns:
            Reply frame to send back, or None when the event has no reply
        """
        if not isinstance(message, dict):
            return {"event": EVENT_ERROR, "data": {"message": "Malformed event"}}

        event = message.get("event")
        if event == EVENT_GET_NOTIFICATIONS:
            return {"event": EVENT_NOTIFICATIONS, "data": [serialize(n) for n in self.get_unseen(db, user_id)]}

        if event in (EVENT_MARK_SEEN, EVENT_MARK_READ):
            notification_id = message.get("id")
            if not isinstance(notification_id, str) or not notification_id:
                return {"event": EVENT_ERROR, "data": {"message": "Notification id required"}}
            try:
                if event == EVENT_MARK_SEEN:
                    self.mark_seen(db, user_id, notification_id)
                else:
                    self.mark_read(db, user_id, notification_id)
            except ResourceNotFoundError as exc:
                return {"event": EVENT_ERROR, "data": {"message": exc.message, "id": notification_id}}
            return None

        return {"event": EVENT_ERROR, "data": {"message": f"Unknown event: {event}"}}
