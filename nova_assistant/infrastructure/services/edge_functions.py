from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from nova_assistant.domain.errors import ClassificationError, SuggestionError
from nova_assistant.domain.models.conversation import Suggestion, SuggestionKind

logger = structlog.get_logger(__name__)


class EdgeFunctionClient:
    """Base for JSON request/response calls to an edge function"""

    endpoint: str = ""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = base_url.rstrip("/") + self.endpoint
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def _invoke(self, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=body, headers=headers)
            response.raise_for_status()
            data = response.json()

        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response shape from {self.endpoint}")
        return data


class IntentClassifierClient(EdgeFunctionClient):
    """detect-tool-intent edge function"""

    endpoint = "/detect-tool-intent"

    async def classify(self, text: str, recent_history: List[Dict[str, str]]) -> str:
        try:
            data = await self._invoke({
                "message": text,
                "conversationHistory": recent_history
            })
        except (httpx.HTTPError, ValueError) as e:
            raise ClassificationError(f"Intent detection failed: {e}") from e

        intent = data.get("detectedIntent")
        return intent if isinstance(intent, str) and intent else "none"


class SuggestionClient(EdgeFunctionClient):
    """generate-suggestions edge function"""

    endpoint = "/generate-suggestions"

    async def suggestions(
        self,
        context: Dict[str, Any],
        current_page: str,
        last_message_text: Optional[str]
    ) -> List[Suggestion]:
        try:
            data = await self._invoke({
                "workspaceContext": context,
                "currentPage": current_page,
                "recentActivity": last_message_text
            })
        except (httpx.HTTPError, ValueError) as e:
            raise SuggestionError(f"Suggestion generation failed: {e}") from e

        raw = data.get("suggestions") or []
        if not isinstance(raw, list):
            raise SuggestionError("Suggestions payload is not a list")

        suggestions = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                suggestions.append(Suggestion(
                    label=item.get("label", ""),
                    action=item.get("action", ""),
                    kind=SuggestionKind(item.get("type", SuggestionKind.TOOL.value))
                ))
            except (ValidationError, ValueError) as e:
                logger.debug("Skipping malformed suggestion", item=item, error=str(e))

        return suggestions
