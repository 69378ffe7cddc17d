"""lambda_function.py — Lambda entry point for the handoff service.

Routes:
    EventBridge scheduled event          -> timeout sweep + stale/expired cleanup
    SQS batch (aws:sqs)                  -> queue processor (partial batch response)
    WebSocket $connect/$disconnect/$default
    POST /api/v1/handoffs                -> create
    GET  /api/v1/handoffs                -> filtered list (advisor)
    GET  /api/v1/handoffs/pending        -> pending list (advisor)
    GET  /api/v1/handoffs/{queueId}      -> fetch
    POST /api/v1/handoffs/{queueId}/assign|start|complete|cancel
    POST /api/v1/messages                -> enqueue chat message
    GET  /api/v1/queue/depth             -> work queue depth (advisor)
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from handoff_relay.auth import _authenticate
from handoff_relay.config import logger
from handoff_relay.context import HandoffContext
from handoff_relay.errors import HandoffError
from handoff_relay.http_utils import _error, _from_handoff_error, _json_body, _path_method, _response
from handoff_relay.models import QueueMessage

_CONTEXT: Optional[HandoffContext] = None

_QUEUE_ID = r"(hq_[A-Za-z0-9]+)"
_PRIVILEGED_ROLES = {"advisor", "service"}


def _get_context() -> HandoffContext:
    global _CONTEXT
    if _CONTEXT is None:
        _CONTEXT = HandoffContext.build()
    return _CONTEXT


def _csv(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    parts = [p.strip() for p in value.split(",") if p.strip()]
    return parts or None


def _forbidden(message: str = "Advisor role required") -> Dict[str, Any]:
    return _error(403, message)

# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------


def _handle_create(ctx: HandoffContext, event: Dict[str, Any], principal: Dict[str, Any]) -> Dict[str, Any]:
    try:
        body = _json_body(event)
    except ValueError as exc:
        return _error(400, str(exc))
    request = {
        "conversationId": body.get("conversationId"),
        "userId": body.get("userId") if principal["role"] == "service" else principal["sub"],
        "priority": body.get("priority"),
        "metadata": body.get("metadata"),
    }
    record, err = ctx.controller.create_handoff({k: v for k, v in request.items() if v is not None})
    if err:
        return _from_handoff_error(err)
    return _response(201, {"success": True, "handoff": record})


def _handle_get(ctx: HandoffContext, queue_id: str, principal: Dict[str, Any]) -> Dict[str, Any]:
    record, err = ctx.controller.get_handoff(queue_id)
    if err:
        return _from_handoff_error(err)
    if principal["role"] not in _PRIVILEGED_ROLES and record.get("userId") != principal["sub"]:
        return _error(404, f"Handoff '{queue_id}' not found", code="HANDOFF_NOT_FOUND")
    return _response(200, {"success": True, "handoff": record})


def _handle_pending(ctx: HandoffContext, event: Dict[str, Any], principal: Dict[str, Any]) -> Dict[str, Any]:
    if principal["role"] not in _PRIVILEGED_ROLES:
        return _forbidden()
    query = event.get("queryStringParameters") or {}
    try:
        limit = int(query["limit"]) if query.get("limit") else None
    except ValueError:
        return _error(400, "limit must be an integer")
    items, err = ctx.controller.get_pending_handoffs(limit)
    if err:
        return _from_handoff_error(err)
    return _response(200, {"success": True, "count": len(items), "handoffs": items})


def _handle_list(ctx: HandoffContext, event: Dict[str, Any], principal: Dict[str, Any]) -> Dict[str, Any]:
    if principal["role"] not in _PRIVILEGED_ROLES:
        return _forbidden()
    query = event.get("queryStringParameters") or {}
    items, err = ctx.controller.list_handoffs(
        statuses=_csv(query.get("status")),
        priorities=_csv(query.get("priority")),
        advisor_id=query.get("advisorId"),
        user_id=query.get("userId"),
    )
    if err:
        return _from_handoff_error(err)
    return _response(200, {"success": True, "count": len(items), "handoffs": items})


def _handle_transition(
    ctx: HandoffContext,
    event: Dict[str, Any],
    queue_id: str,
    action: str,
    principal: Dict[str, Any],
) -> Dict[str, Any]:
    try:
        body = _json_body(event)
    except ValueError as exc:
        return _error(400, str(exc))
    role = principal["role"]
    controller = ctx.controller

    if action == "assign":
        if role not in _PRIVILEGED_ROLES:
            return _forbidden()
        advisor_id = body.get("advisorId") if role == "service" else principal["sub"]
        record, err = controller.assign_handoff(queue_id, str(advisor_id or ""))
    elif action == "start":
        if role not in _PRIVILEGED_ROLES:
            return _forbidden()
        record, err = controller.start_handoff(queue_id, None if role == "service" else principal["sub"])
    elif action == "complete":
        if role not in _PRIVILEGED_ROLES:
            return _forbidden()
        record, err = controller.complete_handoff(queue_id)
    else:
        if role not in _PRIVILEGED_ROLES:
            current, err = controller.get_handoff(queue_id)
            if err:
                return _from_handoff_error(err)
            if current.get("userId") != principal["sub"]:
                return _error(404, f"Handoff '{queue_id}' not found", code="HANDOFF_NOT_FOUND")
        record, err = controller.cancel_handoff(queue_id, body.get("reason"))

    if err:
        return _from_handoff_error(err)
    return _response(200, {"success": True, "handoff": record})


def _handle_enqueue(ctx: HandoffContext, event: Dict[str, Any], principal: Dict[str, Any]) -> Dict[str, Any]:
    try:
        body = _json_body(event)
        message = QueueMessage(
            type=str(body.get("type") or "message"),
            payload=body.get("payload") if isinstance(body.get("payload"), dict) else {"text": body.get("text")},
            user_id=str(body.get("userId") or "") if principal["role"] == "service" else principal["sub"],
            priority=str(body.get("priority") or "medium"),
        )
    except ValueError as exc:
        return _error(400, str(exc))
    try:
        message_id = ctx.processor.enqueue_message(message)
    except HandoffError as exc:
        return _from_handoff_error(exc)
    return _response(202, {"success": True, "id": message.id, "messageId": message_id})


def _handle_depth(ctx: HandoffContext, principal: Dict[str, Any]) -> Dict[str, Any]:
    if principal["role"] not in _PRIVILEGED_ROLES:
        return _forbidden()
    try:
        depth = ctx.work_queue.get_depth()
    except HandoffError as exc:
        return _from_handoff_error(exc)
    return _response(200, {"success": True, **depth})


def _handle_http(ctx: HandoffContext, event: Dict[str, Any]) -> Dict[str, Any]:
    method, path = _path_method(event)
    if method == "OPTIONS":
        return _response(200, {"success": True})
    logger.info("[INFO] route method=%s path=%s", method, path)

    principal, auth_err = _authenticate(event)
    if auth_err:
        return auth_err

    if method == "POST" and path == "/api/v1/handoffs":
        return _handle_create(ctx, event, principal)
    if method == "GET" and path == "/api/v1/handoffs":
        return _handle_list(ctx, event, principal)
    if method == "GET" and path == "/api/v1/handoffs/pending":
        return _handle_pending(ctx, event, principal)

    match_get = re.fullmatch(rf"/api/v1/handoffs/{_QUEUE_ID}", path)
    if method == "GET" and match_get:
        return _handle_get(ctx, match_get.group(1), principal)

    match_action = re.fullmatch(rf"/api/v1/handoffs/{_QUEUE_ID}/(assign|start|complete|cancel)", path)
    if method == "POST" and match_action:
        return _handle_transition(ctx, event, match_action.group(1), match_action.group(2), principal)

    if method == "POST" and path == "/api/v1/messages":
        return _handle_enqueue(ctx, event, principal)
    if method == "GET" and path == "/api/v1/queue/depth":
        return _handle_depth(ctx, principal)

    return _error(404, f"Route not found: {method} {path}")

# ---------------------------------------------------------------------------
# WebSocket handlers
# ---------------------------------------------------------------------------


def _handle_websocket(ctx: HandoffContext, event: Dict[str, Any]) -> Dict[str, Any]:
    rc = event.get("requestContext") or {}
    route = rc.get("routeKey")
    connection_id = str(rc.get("connectionId") or "")
    try:
        if route == "$connect":
            principal, auth_err = _authenticate(event)
            if auth_err:
                return auth_err
            query = event.get("queryStringParameters") or {}
            ctx.registry.register(
                connection_id,
                principal["sub"],
                platform=str(query.get("platform") or "web"),
                role="advisor" if principal["role"] == "advisor" else "user",
            )
            return {"statusCode": 200, "body": "Connected"}

        if route == "$disconnect":
            ctx.registry.handle_disconnection(connection_id)
            return {"statusCode": 200, "body": "Disconnected"}

        connection = ctx.registry.get(connection_id)
        if connection is None:
            return {"statusCode": 410, "body": "Unknown connection"}
        ctx.registry.touch(connection_id)
        try:
            body = _json_body(event)
        except ValueError as exc:
            return {"statusCode": 400, "body": str(exc)}
        if body.get("action") == "ping":
            return {"statusCode": 200, "body": "pong"}
        payload = body.get("payload") if isinstance(body.get("payload"), dict) else {"text": body.get("message")}
        payload["connectionId"] = connection_id
        message = QueueMessage(type="message", payload=payload, user_id=connection.user_id)
        ctx.processor.enqueue_message(message)
        return {"statusCode": 200, "body": json.dumps({"id": message.id})}
    except HandoffError as exc:
        logger.warning("websocket %s on %s failed: %s", route, connection_id, exc)
        return {"statusCode": exc.status_code, "body": exc.message}

# ---------------------------------------------------------------------------
# Queue and schedule handlers
# ---------------------------------------------------------------------------


def _handle_sqs(ctx: HandoffContext, records: List[Dict[str, Any]]) -> Dict[str, Any]:
    report = ctx.processor.process_records(records)
    return {"batchItemFailures": report.batch_item_failures()}


def _handle_scheduled(ctx: HandoffContext) -> Dict[str, Any]:
    summary: Dict[str, Any] = {}
    timed_out, err = ctx.controller.sweep_timeouts()
    summary["timed_out"] = timed_out if err is None else None
    expired, err = ctx.controller.cleanup_expired()
    summary["expired_removed"] = expired if err is None else None
    try:
        summary["stale_connections_removed"] = ctx.registry.cleanup_stale_connections()
    except HandoffError as exc:
        logger.warning("stale connection sweep failed: %s", exc)
        summary["stale_connections_removed"] = None
    logger.info("[INFO] scheduled sweep %s", json.dumps(summary, sort_keys=True))
    return summary


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    ctx = _get_context()

    if event.get("source") == "aws.events" or event.get("detail-type") == "Scheduled Event":
        logger.info("[INFO] scheduled sweep triggered")
        return _handle_scheduled(ctx)

    records = event.get("Records")
    if isinstance(records, list) and records and (records[0].get("eventSource") or "") == "aws:sqs":
        logger.info("[INFO] SQS batch received (%d records)", len(records))
        return _handle_sqs(ctx, records)

    rc = event.get("requestContext") or {}
    if rc.get("connectionId") and rc.get("routeKey"):
        return _handle_websocket(ctx, event)

    try:
        return _handle_http(ctx, event)
    except Exception:
        logger.exception("unhandled error")
        return _error(500, "Internal server error")
