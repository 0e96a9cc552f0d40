from __future__ import annotations

from datetime import UTC, datetime
import logging

import httpx
from pydantic import ValidationError

from msgsync.core.errors import RejectedMutation, TransportError
from msgsync.schemas.messages import (
    ContentRequest,
    Message,
    MessageListResponse,
    Reply,
    ReplyListResponse,
    Scope,
    ScopeType,
    SendMessageRequest,
)
from msgsync.schemas.sync import DeltaBatch, SyncScopes

logger = logging.getLogger(__name__)


SCOPE_PATHS: dict[ScopeType, str] = {
    ScopeType.team: "teams",
    ScopeType.organization: "organizations",
    ScopeType.direct: "direct",
}


def serialize_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC).isoformat()
    return value.isoformat()


def _scope_messages_path(scope: Scope) -> str:
    return f"{SCOPE_PATHS[scope.scope_type]}/{scope.scope_id}/messages"


def _error_details(response: httpx.Response) -> tuple[str, str]:
    try:
        body = response.json()
    except ValueError:
        return "http_error", response.reason_phrase or "Request failed"
    if not isinstance(body, dict):
        return "http_error", "Request failed"
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("code") or "http_error"), str(error.get("message") or "Request failed")
    message = body.get("message")
    return str(body.get("code") or "http_error"), str(message) if message else "Request failed"


class MessageTransport:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        mutation: bool,
        params: dict[str, str] | None = None,
        json: dict[str, object] | None = None,
    ) -> dict[str, object]:
        logger.debug("HTTP request started method=%s path=%s", method, path)
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("HTTP request timed out method=%s path=%s", method, path)
            raise TransportError(code="timeout", message="Request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP request failed method=%s path=%s error=%s", method, path, exc)
            raise TransportError(message=f"Request failed: {exc}") from exc

        logger.debug("HTTP request completed method=%s path=%s status=%s", method, path, response.status_code)
        if response.status_code >= 400:
            code, message = _error_details(response)
            if mutation and response.status_code < 500:
                raise RejectedMutation(status_code=response.status_code, code=code, message=message)
            raise TransportError(status_code=response.status_code, code=code, message=message)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(status_code=response.status_code, message="Response body is not JSON") from exc
        if not isinstance(body, dict):
            raise TransportError(status_code=response.status_code, message="Response payload must be an object")

        if body.get("status") == "error":
            message = str(body.get("message") or "Request failed")
            if mutation:
                raise RejectedMutation(status_code=response.status_code, code="rejected", message=message)
            raise TransportError(status_code=response.status_code, message=message)

        data = body.get("data", body)
        if not isinstance(data, dict):
            raise TransportError(status_code=response.status_code, message="Response data must be an object")
        return data

    async def list_scope_messages(self, scope: Scope, *, limit: int = 50, offset: int = 0) -> list[Message]:
        params = {"limit": str(limit)}
        if offset:
            params["offset"] = str(offset)
        data = await self._request("GET", _scope_messages_path(scope), mutation=False, params=params)
        try:
            messages = MessageListResponse.model_validate(data).messages
        except ValidationError as exc:
            raise TransportError(message="Invalid message list payload", details=exc.errors()) from exc
        logger.debug(
            "Listed scope messages scope_type=%s scope_id=%s count=%s",
            scope.scope_type.value,
            scope.scope_id,
            len(messages),
        )
        return [_with_scope(message, scope) for message in messages]

    async def poll_messages(self, *, since: datetime, scopes: SyncScopes) -> DeltaBatch:
        params = {"since": serialize_timestamp(since)}
        if scopes.team_ids:
            params["teamIds"] = ",".join(scopes.team_ids)
        if scopes.org_ids:
            params["orgIds"] = ",".join(scopes.org_ids)
        data = await self._request("GET", "messages/poll", mutation=False, params=params)
        if data.get("polled_at") is None:
            raise TransportError(message="Poll response is missing polled_at")
        try:
            return DeltaBatch.model_validate({"messages": data.get("messages") or [], "polled_at": data["polled_at"]})
        except ValidationError as exc:
            raise TransportError(message="Invalid poll payload", details=exc.errors()) from exc

    async def send_message(self, scope: Scope, request: SendMessageRequest) -> Message:
        data = await self._request(
            "POST",
            _scope_messages_path(scope),
            mutation=True,
            json=request.model_dump(by_alias=True),
        )
        message = _parse_message(data.get("message", data))
        return _with_scope(message, scope)

    async def mark_read(self, message_id: str) -> None:
        await self._request("POST", f"messages/{message_id}/read", mutation=True)

    async def create_reply(self, message_id: str, content: str) -> Reply:
        data = await self._request(
            "POST",
            f"messages/{message_id}/replies",
            mutation=True,
            json=ContentRequest(content=content).model_dump(),
        )
        raw_reply = data.get("reply") or data.get("message") or data
        try:
            reply = Reply.model_validate(raw_reply)
        except ValidationError as exc:
            raise TransportError(message="Invalid reply payload", details=exc.errors()) from exc
        if not reply.parent_id:
            reply = reply.model_copy(update={"parent_id": message_id})
        return reply

    async def list_replies(self, message_id: str) -> list[Reply]:
        data = await self._request("GET", f"messages/{message_id}/replies", mutation=False)
        try:
            replies = ReplyListResponse.model_validate(data).replies
        except ValidationError as exc:
            raise TransportError(message="Invalid reply list payload", details=exc.errors()) from exc
        return [reply if reply.parent_id else reply.model_copy(update={"parent_id": message_id}) for reply in replies]

    async def edit_message(self, message_id: str, content: str) -> Message:
        data = await self._request(
            "PUT",
            f"messages/{message_id}",
            mutation=True,
            json=ContentRequest(content=content).model_dump(),
        )
        return _parse_message(data.get("message", data))

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"messages/{message_id}", mutation=True)


def _parse_message(raw: object) -> Message:
    try:
        return Message.model_validate(raw)
    except ValidationError as exc:
        raise TransportError(message="Invalid message payload", details=exc.errors()) from exc


def _with_scope(message: Message, scope: Scope) -> Message:
    if message.scope_id:
        return message
    return message.model_copy(update={"scope_type": scope.scope_type, "scope_id": scope.scope_id})
