# waflow/services/flow_engine.py
"""
Flow routing engine - decides what automated action follows an inbound message.

Routing order for one inbound message:
1. Button reply: a connection whose button matches the reply payload or text.
2. Function continuation: the contact's cursor points at a node with a
   function connection; the reply is the function input.
3. Trigger match: start a flow and send its first node.
4. Nothing matched: stay silent.

Each inbound message causes at most one function run and one send, so cyclic
graphs cannot loop at runtime.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from waflow.core.errors import ConfigurationError, NotFoundError, WaflowError
from waflow.core.logging_config import get_flow_logger
from waflow.models.contact import Contact
from waflow.models.custom_message import PLACEHOLDER_RE, CustomMessage
from waflow.models.flow import Flow
from waflow.models.function import FunctionDefinition
from waflow.schemas.flow import ConnectionSchema
from waflow.services.message_service import save_outgoing_message
from waflow.services.sandbox import FunctionRunResult, clamp_timeout, run_user_function
from waflow.services.sender import SendResult, WhatsAppSender, get_sender_for_owner

log = get_flow_logger()

CUSTOM_NODE_PREFIX = "custom:"


# ────────────────────────────────────────────
# Graph
# ────────────────────────────────────────────

@dataclass(frozen=True)
class TemplateTarget:
    name: str

    @property
    def node(self) -> str:
        return self.name


@dataclass(frozen=True)
class CustomMessageTarget:
    name: str

    @property
    def node(self) -> str:
        return f"{CUSTOM_NODE_PREFIX}{self.name}"


@dataclass(frozen=True)
class FunctionTarget:
    name: str
    next_node: Optional[str] = None
    output_mapping: Optional[Dict[str, str]] = field(default=None, hash=False)


NodeTarget = Union[TemplateTarget, CustomMessageTarget]
Target = Union[TemplateTarget, CustomMessageTarget, FunctionTarget]


def node_target(node: str) -> NodeTarget:
    """'custom:<name>' is a custom message, anything else a provider template"""
    if node.startswith(CUSTOM_NODE_PREFIX):
        return CustomMessageTarget(node[len(CUSTOM_NODE_PREFIX):])
    return TemplateTarget(node)


def connection_target(conn: ConnectionSchema) -> Target:
    if conn.target_type == "function":
        return FunctionTarget(conn.target, conn.next_node, conn.output_mapping)
    if conn.target_type == "custom_message":
        name = conn.target
        if name.startswith(CUSTOM_NODE_PREFIX):
            name = name[len(CUSTOM_NODE_PREFIX):]
        return CustomMessageTarget(name)
    return node_target(conn.target)


class ConnectionGraph:
    """Adjacency map (source node, button or None) -> target"""

    def __init__(self) -> None:
        self._edges: Dict[Tuple[str, Optional[str]], Target] = {}

    @classmethod
    def from_connections(cls, connections: Optional[Iterable[Any]]) -> "ConnectionGraph":
        graph = cls()
        for raw in connections or []:
            try:
                conn = raw if isinstance(raw, ConnectionSchema) else ConnectionSchema.model_validate(raw)
            except PydanticValidationError as e:
                log.warning(f"⚠️ Skipping invalid connection {raw!r}: {e.error_count()} error(s)")
                continue
            graph.add(conn.source_node, conn.button, connection_target(conn))
        return graph

    def add(self, source: str, button: Optional[str], target: Target) -> None:
        # Later entries replace earlier ones for the same key
        self._edges[(source, button or None)] = target

    def resolve(self, source: str, button: Optional[str] = None) -> Optional[Target]:
        return self._edges.get((source, button or None))

    def function_after(self, source: str) -> Optional[FunctionTarget]:
        target = self.resolve(source, None)
        return target if isinstance(target, FunctionTarget) else None

    def find_button(self, values: Iterable[Optional[str]], source: Optional[str] = None) -> Optional[Tuple[str, Target]]:
        """First edge whose button equals one of `values`, optionally limited to one source node"""
        wanted = [v for v in values if v]
        for value in wanted:
            for (edge_source, button), target in self._edges.items():
                if button == value and (source is None or edge_source == source):
                    return edge_source, target
        return None

    def __len__(self) -> int:
        return len(self._edges)


# ────────────────────────────────────────────
# Conversation cursor
# ────────────────────────────────────────────

@dataclass(frozen=True)
class ConversationCursor:
    """Which node was last sent to a contact, and from which flow"""
    flow_id: Optional[int]
    node: Optional[str]
    version: int

    @property
    def empty(self) -> bool:
        return not self.node

    @classmethod
    def of(cls, contact: Contact) -> "ConversationCursor":
        return cls(contact.cursor_flow_id, contact.cursor_node or None, contact.cursor_version or 0)


def move_cursor(db: Session, contact_id: int, expected_version: int, flow_id: Optional[int], node: Optional[str]) -> bool:
    """
    Compare-and-swap the cursor. Returns False when another handler changed
    it since `expected_version` was read.
    """
    updated = db.query(Contact).filter(
        Contact.id == contact_id,
        Contact.cursor_version == expected_version
    ).update({
        Contact.cursor_flow_id: flow_id if node else None,
        Contact.cursor_node: node or "",
        Contact.cursor_version: expected_version + 1,
    }, synchronize_session=False)
    db.commit()
    return updated == 1


def clear_cursor(db: Session, contact_id: int, expected_version: int) -> bool:
    return move_cursor(db, contact_id, expected_version, None, None)


# ────────────────────────────────────────────
# Flow lookup and triggers
# ────────────────────────────────────────────

def list_flows(db: Session, owner_id: str) -> List[Flow]:
    """Owner's flows, most recently updated first (id breaks ties)"""
    return db.query(Flow).filter(
        Flow.owner_id == owner_id
    ).order_by(Flow.updated_at.desc(), Flow.id.desc()).all()


def matches_trigger(flow: Flow, text: str) -> bool:
    match_type = flow.trigger_match_type or "any"
    if match_type == "any":
        return True

    text = (text or "").lower()
    match_text = (flow.trigger_match_text or "").lower()

    if match_type == "includes":
        return match_text in text
    if match_type == "starts_with":
        return text.startswith(match_text)
    if match_type == "exact":
        return text == match_text
    return True


def find_matching_flow(flows: Iterable[Flow], text: str) -> Optional[Flow]:
    """Specific triggers win over 'any'; within a group the first flow wins."""
    flows = list(flows)
    for flow in flows:
        if (flow.trigger_match_type or "any") != "any" and matches_trigger(flow, text):
            return flow
    for flow in flows:
        if (flow.trigger_match_type or "any") == "any":
            return flow
    return None


# ────────────────────────────────────────────
# Functions and placeholders
# ────────────────────────────────────────────

@dataclass
class ResolvedFunction:
    name: str
    code: str
    input_key: str = "input"
    timeout_ms: int = 5000
    next_node: Optional[str] = None


def resolve_function(db: Session, owner_id: Optional[str], flow: Optional[Flow], name: str) -> ResolvedFunction:
    """Functions embedded in the flow shadow the owner's standalone functions"""
    for fn in (flow.functions if flow is not None else None) or []:
        if isinstance(fn, dict) and fn.get("name") == name:
            return ResolvedFunction(
                name=name,
                code=fn.get("code") or "",
                input_key=fn.get("input_key") or fn.get("inputKey") or "input",
                timeout_ms=clamp_timeout(fn.get("timeout_ms") or fn.get("timeoutMs")),
                next_node=fn.get("next_node") or fn.get("nextTemplate") or None,
            )

    standalone = db.query(FunctionDefinition).filter(
        FunctionDefinition.owner_id == owner_id,
        FunctionDefinition.name == name
    ).first()
    if standalone:
        return ResolvedFunction(
            name=name,
            code=standalone.code,
            input_key=standalone.input_key or "input",
            timeout_ms=clamp_timeout(standalone.timeout_ms),
            next_node=standalone.next_node or None,
        )

    raise NotFoundError(f'Function "{name}" not found')


def build_placeholders(output: Any, mapping: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Placeholder values from a function output.

    With a mapping, each output key feeds the named placeholder ('output'
    refers to a scalar output). Without one, dict keys are used directly and
    a scalar is exposed as {{output}}.
    """
    if mapping:
        values = {}
        for output_key, placeholder in mapping.items():
            if isinstance(output, dict) and output_key in output:
                values[placeholder] = output[output_key]
            elif output_key == "output" and not isinstance(output, dict):
                values[placeholder] = output
        return values
    if isinstance(output, dict):
        return dict(output)
    if output is None:
        return {}
    return {"output": output}


def _placeholder_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def render_placeholders(content: str, values: Optional[Dict[str, Any]]) -> str:
    """Substitute {{token}}; unknown tokens become empty strings"""
    values = values or {}
    return PLACEHOLDER_RE.sub(lambda m: _placeholder_text(values.get(m.group(1))), content or "")


async def execute_function_node(
    db: Session,
    owner_id: str,
    function_name: str,
    input_value: Any,
    context: Optional[Dict[str, Any]] = None,
    flow_id: Optional[int] = None,
) -> Tuple[FunctionRunResult, Optional[str]]:
    """Run a named function of a flow (or of the owner) and report its next node."""
    query = db.query(Flow).filter(Flow.owner_id == owner_id)
    if flow_id is not None:
        flow = query.filter(Flow.id == flow_id).first()
        if not flow:
            raise NotFoundError("Flow not found")
    else:
        flow = query.order_by(Flow.updated_at.desc(), Flow.id.desc()).first()

    fn = resolve_function(db, owner_id, flow, function_name)
    merged = {"owner_id": owner_id, **(context or {})}
    merged[fn.input_key] = input_value

    result = await run_user_function(fn.code, input_value, merged, fn.timeout_ms)
    return result, fn.next_node


# ────────────────────────────────────────────
# Router
# ────────────────────────────────────────────

@dataclass
class InboundMessage:
    text: str = ""
    button_payload: Optional[str] = None
    button_text: Optional[str] = None

    @property
    def is_button(self) -> bool:
        return bool(self.button_payload or self.button_text)

    @property
    def reply_text(self) -> str:
        return self.button_text or self.button_payload or self.text or ""


@dataclass
class RouteResult:
    """What the router did; `action` is button, function, trigger, none, skipped or error"""
    action: str
    flow_id: Optional[int] = None
    node: Optional[str] = None
    function_result: Optional[FunctionRunResult] = None
    error: Optional[str] = None


SenderFactory = Callable[[Session, Optional[str]], Optional[WhatsAppSender]]
FunctionRunner = Callable[..., Awaitable[FunctionRunResult]]


class FlowRouter:
    """Routes inbound messages of one owner through that owner's flows."""

    def __init__(
        self,
        sender_factory: SenderFactory = get_sender_for_owner,
        runner: FunctionRunner = run_user_function,
        bus=None,
    ):
        self.sender_factory = sender_factory
        self.runner = runner
        self.bus = bus

    async def route(self, db: Session, contact: Contact, inbound: InboundMessage) -> RouteResult:
        """Never raises: failures are logged and reported as action='error'."""
        try:
            return await self._route(db, contact, inbound)
        except Exception as e:
            db.rollback()
            log.exception(f"❌ Routing failed for contact {contact.wa_id}: {e}")
            return RouteResult("error", error=str(e))

    async def _route(self, db: Session, contact: Contact, inbound: InboundMessage) -> RouteResult:
        owner_id = contact.owner_id
        flows = list_flows(db, owner_id)
        if not flows:
            log.debug(f"No flows for owner {owner_id}")
            return RouteResult("none")

        graphs = {flow.id: ConnectionGraph.from_connections(flow.connections) for flow in flows}
        cursor = ConversationCursor.of(contact)

        # 1. Button reply
        if inbound.is_button:
            result = await self._route_button(db, contact, inbound, flows, graphs, cursor)
            if result is not None:
                return result
            log.info(f"🔘 No connection for button {inbound.button_payload!r}/{inbound.button_text!r}")

        # 2. Function continuation
        elif not cursor.empty:
            flow = next((f for f in flows if f.id == cursor.flow_id), None)
            target = graphs[flow.id].function_after(cursor.node) if flow is not None else None
            if target is not None:
                return await self._continue_with_function(db, contact, flow, target, cursor, inbound.text)

        # 3. Trigger match
        flow = find_matching_flow(flows, inbound.reply_text)
        if flow is None or not flow.first_node:
            log.info(f"🤫 No flow matched message from {contact.wa_id}")
            return RouteResult("none")

        log.info(f"🚀 Flow '{flow.name}' ({flow.id}) triggered by {contact.wa_id}")
        node = node_target(flow.first_node)
        await self._send_node(db, contact, node)
        self._set_cursor(db, contact, cursor, flow.id, node.node)
        return RouteResult("trigger", flow_id=flow.id, node=node.node)

    async def _route_button(self, db, contact, inbound, flows, graphs, cursor) -> Optional[RouteResult]:
        values = (inbound.button_payload, inbound.button_text)

        match = None
        # Prefer edges leaving the node the contact is looking at
        if not cursor.empty and cursor.flow_id in graphs:
            found = graphs[cursor.flow_id].find_button(values, source=cursor.node)
            if found:
                match = (next(f for f in flows if f.id == cursor.flow_id), found[1])
        if match is None:
            for flow in flows:
                found = graphs[flow.id].find_button(values)
                if found:
                    match = (flow, found[1])
                    break
        if match is None:
            return None

        flow, target = match
        log.info(f"🔘 Button {values} -> {target} in flow {flow.id}")

        if isinstance(target, FunctionTarget):
            return await self._continue_with_function(db, contact, flow, target, cursor, inbound.reply_text)

        await self._send_node(db, contact, target)
        self._set_cursor(db, contact, cursor, flow.id, target.node)
        return RouteResult("button", flow_id=flow.id, node=target.node)

    async def _continue_with_function(
        self,
        db: Session,
        contact: Contact,
        flow: Flow,
        target: FunctionTarget,
        cursor: ConversationCursor,
        input_text: str,
    ) -> RouteResult:
        # Claim the reply first: the cursor is empty afterwards whatever happens
        if not clear_cursor(db, contact.id, cursor.version):
            log.info(f"⏭️ Cursor of {contact.wa_id} changed concurrently, reply already handled")
            return RouteResult("skipped", flow_id=flow.id)
        db.refresh(contact)

        try:
            fn = resolve_function(db, contact.owner_id, flow, target.name)
            context = {
                "owner_id": contact.owner_id,
                "contact_id": contact.id,
                "wa_id": contact.wa_id,
                "contact_name": contact.name,
                "flow_id": flow.id,
            }
            context[fn.input_key] = input_text

            log.info(f"⚙️ Running function '{fn.name}' for {contact.wa_id} (timeout {fn.timeout_ms}ms)")
            result = await self.runner(fn.code, input_text, context, fn.timeout_ms)
            for line in result.logs:
                log.debug(f"   [{fn.name}] {line}")

            next_node = target.next_node or fn.next_node
            if next_node:
                node = node_target(next_node)
                await self._send_node(db, contact, node, build_placeholders(result.output, target.output_mapping))
                return RouteResult("function", flow_id=flow.id, node=node.node, function_result=result)
            return RouteResult("function", flow_id=flow.id, function_result=result)
        except WaflowError as e:
            db.rollback()
            log.error(f"❌ Function '{target.name}' failed for {contact.wa_id}: {e.message}")
            for line in e.logs:
                log.debug(f"   [{target.name}] {line}")
            return RouteResult("error", flow_id=flow.id, error=e.message)

    # ────────────────────────────────────────────
    # Sending
    # ────────────────────────────────────────────

    async def _send_node(
        self,
        db: Session,
        contact: Contact,
        node: NodeTarget,
        placeholders: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        sender = self.sender_factory(db, contact.owner_id)
        if sender is None:
            raise ConfigurationError(f"No WhatsApp account configured for owner {contact.owner_id}")

        if isinstance(node, CustomMessageTarget):
            message = db.query(CustomMessage).filter(
                CustomMessage.owner_id == contact.owner_id,
                CustomMessage.name == node.name
            ).first()
            if not message:
                raise NotFoundError(f'Custom message "{node.name}" not found')
            body = render_placeholders(message.content, placeholders)
            result = await sender.send_custom_message(contact.wa_id, body, message.buttons)
            message_type, content = "text", body
        else:
            result = await sender.send_template(contact.wa_id, node.name)
            message_type, content = "template", f"[Template: {node.name}]"

        result.raise_for_status()
        saved = save_outgoing_message(db, contact, result.message_id, message_type, content)
        if self.bus is not None:
            self.bus.publish(contact.owner_id, "new_message", {
                "message": {
                    "id": saved.id,
                    "contact_id": contact.id,
                    "direction": "outgoing",
                    "type": message_type,
                    "content": content,
                    "timestamp": saved.timestamp.isoformat(),
                    "status": saved.status,
                },
            })
        return result

    def _set_cursor(self, db: Session, contact: Contact, cursor: ConversationCursor, flow_id: int, node: str) -> None:
        if not move_cursor(db, contact.id, cursor.version, flow_id, node):
            log.warning(f"⚠️ Cursor of {contact.wa_id} changed concurrently, keeping the newer value")
        db.refresh(contact)
