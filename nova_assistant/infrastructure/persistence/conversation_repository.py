from typing import Any, Dict, List, Optional
from datetime import datetime
import asyncio
import uuid

import httpx
import structlog
from pydantic import ValidationError

from nova_assistant.domain.errors import PersistenceError
from nova_assistant.domain.models.conversation import ConversationSnapshot, ConversationSummary

logger = structlog.get_logger(__name__)


class InMemoryConversationRepository:
    """Process-local conversation storage"""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.writes = 0
        self._lock = asyncio.Lock()

    async def save(self, conversation_id: Optional[str], snapshot: ConversationSnapshot) -> str:
        """Store a snapshot, creating the conversation when it has no id yet"""

        async with self._lock:
            if conversation_id is None:
                conversation_id = str(uuid.uuid4())
                self.rows[conversation_id] = {"user_id": self.user_id, "is_active": True}
            elif conversation_id not in self.conversations:
                raise PersistenceError(f"Conversation {conversation_id} not found")

            self.conversations[conversation_id] = snapshot.model_dump(mode="json")
            self.writes += 1
            # Write counter breaks ties between saves within one clock tick
            self.rows[conversation_id].update(updated_at=datetime.utcnow(), revision=self.writes)
            return conversation_id

    async def load(self, conversation_id: str) -> Optional[ConversationSnapshot]:
        async with self._lock:
            data = self.conversations.get(conversation_id)
            if data is None:
                return None
            return ConversationSnapshot.model_validate(data)

    async def list_conversations(self, user_id: Optional[str] = None) -> List[ConversationSummary]:
        async with self._lock:
            rows = [
                (conversation_id, row) for conversation_id, row in self.rows.items()
                if row["is_active"] and (user_id is None or row["user_id"] == user_id)
            ]
            rows.sort(key=lambda item: (item[1]["updated_at"], item[1]["revision"]), reverse=True)
            return [
                ConversationSummary(
                    id=conversation_id,
                    title=self.conversations[conversation_id]["title"],
                    updated_at=row["updated_at"]
                )
                for conversation_id, row in rows
            ]

    async def archive(self, conversation_id: str) -> bool:
        async with self._lock:
            row = self.rows.get(conversation_id)
            if row is None:
                return False
            row["is_active"] = False
            return True


class SupabaseConversationRepository:
    """Conversation rows in the nova_conversations table through PostgREST"""

    def __init__(
        self,
        rest_url: str,
        api_key: str,
        table: str = "nova_conversations",
        user_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = f"{rest_url.rstrip('/')}/{table}"
        self.api_key = api_key
        self.user_id = user_id
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "apikey": self.api_key,
            "Prefer": "return=representation"
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _row(snapshot: ConversationSnapshot) -> Dict[str, Any]:
        data = snapshot.model_dump(mode="json")
        return {
            "title": data["title"],
            "messages": data["messages"],
            "context_snapshot": data["context_snapshot"],
            "workflow_state": data["workflow_state"],
            "updated_at": datetime.utcnow().isoformat()
        }

    async def save(self, conversation_id: Optional[str], snapshot: ConversationSnapshot) -> str:
        row = self._row(snapshot)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                if conversation_id is None:
                    if self.user_id:
                        row["user_id"] = self.user_id
                    response = await client.post(self.url, json=row, headers=self._headers())
                else:
                    response = await client.patch(
                        self.url,
                        params={"id": f"eq.{conversation_id}"},
                        json=row,
                        headers=self._headers()
                    )
                response.raise_for_status()
                rows = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PersistenceError(f"Failed to save conversation: {e}") from e

        if conversation_id is not None:
            return conversation_id

        if not isinstance(rows, list) or not rows or "id" not in rows[0]:
            raise PersistenceError("Insert returned no conversation id")
        return str(rows[0]["id"])

    async def load(self, conversation_id: str) -> Optional[ConversationSnapshot]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    self.url,
                    params={
                        "id": f"eq.{conversation_id}",
                        "select": "title,messages,context_snapshot,workflow_state"
                    },
                    headers=self._headers()
                )
                response.raise_for_status()
                rows = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PersistenceError(f"Failed to load conversation: {e}") from e

        if not rows:
            return None

        row = rows[0]
        try:
            return ConversationSnapshot(
                title=row.get("title") or "",
                messages=row.get("messages") or [],
                context_snapshot=row.get("context_snapshot") or {},
                workflow_state=row.get("workflow_state")
            )
        except ValidationError as e:
            logger.error("Stored conversation is malformed", conversation_id=conversation_id, error=str(e))
            raise PersistenceError(f"Stored conversation {conversation_id} is malformed") from e

    async def list_conversations(self, user_id: Optional[str] = None) -> List[ConversationSummary]:
        params = {
            "is_active": "eq.true",
            "select": "id,title,updated_at",
            "order": "updated_at.desc"
        }
        owner = user_id or self.user_id
        if owner:
            params["user_id"] = f"eq.{owner}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.url, params=params, headers=self._headers())
                response.raise_for_status()
                rows = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PersistenceError(f"Failed to list conversations: {e}") from e

        try:
            return [
                ConversationSummary(
                    id=str(row["id"]),
                    title=row.get("title") or "",
                    updated_at=row.get("updated_at")
                )
                for row in rows or []
            ]
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise PersistenceError("Conversation list is malformed") from e

    async def archive(self, conversation_id: str) -> bool:
        """Soft delete: the row stays but leaves the history"""

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.patch(
                    self.url,
                    params={"id": f"eq.{conversation_id}"},
                    json={"is_active": False},
                    headers=self._headers()
                )
                response.raise_for_status()
                rows = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PersistenceError(f"Failed to archive conversation: {e}") from e

        return bool(rows)
