"""Emit BPMN 2.0 XML from IR.

The IR is validated first; nothing is assembled for an invalid graph. Nodes
and flows are collected into plain records, then rendered with ElementTree
together with a diagram-interchange section (lanes as horizontal bands,
one column per node in process order).
"""

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Optional

from storyflow.durations import format_duration
from storyflow.ir import (
    IR,
    CaseState,
    ChoiceState,
    IRState,
    ParallelState,
    ReceiveState,
    SendState,
    StopState,
    TaskState,
    UserTaskState,
    WaitState,
    validate_ir,
)
from storyflow.errors import GraphError

logger = logging.getLogger(__name__)

BPMN_NS = "http://www.omg.org/spec/BPMN/20100524/MODEL"
BPMNDI_NS = "http://www.omg.org/spec/BPMN/20100524/DI"
DC_NS = "http://www.omg.org/spec/DD/20100524/DC"
DI_NS = "http://www.omg.org/spec/DD/20100524/DI"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
TARGET_NAMESPACE = "https://storyflow.dev/bpmn"

for _prefix, _uri in (("bpmn", BPMN_NS), ("bpmndi", BPMNDI_NS), ("dc", DC_NS), ("di", DI_NS), ("xsi", XSI_NS)):
    ET.register_namespace(_prefix, _uri)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

# Diagram geometry
LANE_HEADER = 30
LANE_HEIGHT = 160
COLUMN_WIDTH = 170
LEFT_MARGIN = 60
SIZES = {
    "task": (120, 80),
    "event": (36, 36),
    "gateway": (50, 50),
}

# Heuristic lane buckets, in the kind they are registered with.
HUMAN_LANE = ("Human Tasks", "human")
EXTERNAL_LANE = ("External Partners", "external")
CONTROL_LANE = ("Control Flow", "control")
TIMER_LANE = ("Timers", "system")
SYSTEM_LANE = ("System Automation", "system")


def b(tag: str) -> str:
    return f"{{{BPMN_NS}}}{tag}"


def sanitize_id(value: str) -> str:
    """Identifier-safe form: every run outside [A-Za-z0-9_] becomes one underscore."""
    return re.sub(r"[^A-Za-z0-9_]+", "_", value)


def format_lane_label(raw: Optional[str]) -> str:
    """on_call_engineer -> On Call Engineer."""
    if not raw:
        return ""
    words = re.sub(r"[_-]+", " ", raw).split()
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def format_case_condition(expression: str, value: str) -> str:
    expr = expression.strip()
    value = value.strip()
    if not value:
        return expr
    if re.match(r"^(['\"]).*\1$", value) or re.match(r"^-?\d+(?:\.\d+)?$", value):
        return f"{expr} == {value}"
    escaped = value.replace('"', '\\"')
    return f'{expr} == "{escaped}"'


@dataclass
class _Node:
    id: str
    tag: str
    kind: str  # task | event | gateway, for layout
    name: Optional[str] = None
    attrs: dict[str, str] = field(default_factory=dict)
    documentation: Optional[str] = None
    definition: Optional[ET.Element] = None
    incoming: list[str] = field(default_factory=list)
    outgoing: list[str] = field(default_factory=list)
    default_flow: Optional[str] = None


@dataclass
class _Flow:
    id: str
    source: str
    target: str
    condition: Optional[str] = None


@dataclass
class _Lane:
    id: str
    name: str
    index: int
    kind: str
    refs: list[str] = field(default_factory=list)


@dataclass
class _Bounds:
    x: float
    y: float
    width: float
    height: float


class BpmnEmitter:
    def __init__(self, ir: IR):
        self.ir = ir
        self.states = ir.state_map()
        self.nodes: list[_Node] = []
        self.node_by_state: dict[str, _Node] = {}
        self.flows: list[_Flow] = []
        self.messages: dict[str, str] = {}  # message id -> name
        self.lanes: list[_Lane] = []
        self.lane_by_key: dict[str, _Lane] = {}
        self.lane_alias: dict[str, _Lane] = {}
        self.lane_by_node: dict[str, _Lane] = {}
        self.join_gateway_by_parallel: dict[str, _Node] = {}
        self.join_gateway_by_target: dict[str, _Node] = {}
        self.boundary_hosts: dict[str, str] = {}  # wait state id -> host state id

    # --- lanes ---

    def ensure_lane(self, name: str, kind: str = "system") -> _Lane:
        display = format_lane_label(name) or SYSTEM_LANE[0]
        key = display.lower()
        lane = self.lane_by_key.get(key)
        if lane is None:
            lane = _Lane(id=f"Lane_{sanitize_id(display) or 'Default'}", name=display, index=len(self.lanes), kind=kind)
            self.lane_by_key[key] = lane
            self.lanes.append(lane)
        return lane

    def assign_lane(self, node_id: str, lane: _Lane) -> None:
        if node_id not in lane.refs:
            lane.refs.append(node_id)
        self.lane_by_node[node_id] = lane

    def lane_for(self, state: IRState) -> _Lane:
        if state.lane:
            return self.lane_alias.get(state.lane.lower()) or self.ensure_lane(state.lane)
        if isinstance(state, UserTaskState):
            if state.assignee:
                return self.ensure_lane(state.assignee, "human")
            return self.ensure_lane(*HUMAN_LANE)
        if isinstance(state, (SendState, ReceiveState)):
            return self.ensure_lane(*EXTERNAL_LANE)
        if isinstance(state, (ChoiceState, CaseState, ParallelState)):
            return self.ensure_lane(*CONTROL_LANE)
        if isinstance(state, WaitState):
            return self.ensure_lane(*TIMER_LANE)
        return self.ensure_lane(*SYSTEM_LANE)

    # --- nodes ---

    def message_ref(self, key: str, name: str) -> str:
        message_id = f"Message_{sanitize_id(key)}"
        self.messages.setdefault(message_id, name)
        return message_id

    def timer_definition(self, state: WaitState) -> ET.Element:
        definition = ET.Element(b("timerEventDefinition"))
        if state.until:
            ET.SubElement(definition, b("timeDate")).text = state.until
        else:
            ET.SubElement(definition, b("timeDuration")).text = format_duration(state.delay_ms)
        return definition

    def node_for(self, state: IRState) -> _Node:
        base = sanitize_id(state.id or "state")
        if isinstance(state, TaskState):
            notes = []
            if state.retry:
                note = f"Retry up to {state.retry.max} times"
                if state.retry.backoff_ms:
                    note += f"; backoff {state.retry.backoff_ms}ms"
                notes.append(note)
            if state.timeout:
                notes.append(f"Timeout {state.timeout}ms")
            return _Node(f"ServiceTask_{base}", b("serviceTask"), "task", name=state.action,
                         documentation="; ".join(notes) or None)
        if isinstance(state, UserTaskState):
            return _Node(f"UserTask_{base}", b("userTask"), "task", name=state.prompt,
                         documentation=f"Assigned to {state.assignee}" if state.assignee else None)
        if isinstance(state, SendState):
            ref = self.message_ref(state.id, f"{state.channel} message")
            return _Node(f"SendTask_{base}", b("sendTask"), "task", name=f"Send via {state.channel}",
                         attrs={"messageRef": ref}, documentation=f"To {state.to}: {state.message}")
        if isinstance(state, ReceiveState):
            node = _Node(f"IntermediateCatchEvent_{base}", b("intermediateCatchEvent"), "event",
                         name=f"Wait for {state.event}")
            if not state.plain:
                ref = self.message_ref(state.event, state.event)
                node.definition = ET.Element(b("messageEventDefinition"), {"messageRef": ref})
            return node
        if isinstance(state, ChoiceState):
            name = f"{state.branches[0].cond}?" if len(state.branches) == 1 else None
            return _Node(f"ExclusiveGateway_{base}", b("exclusiveGateway"), "gateway", name=name)
        if isinstance(state, CaseState):
            return _Node(f"ExclusiveGateway_{base}", b("exclusiveGateway"), "gateway",
                         name=f"Case {state.expression}")
        if isinstance(state, ParallelState):
            return _Node(f"ParallelGateway_{base}", b("parallelGateway"), "gateway")
        if isinstance(state, WaitState):
            if state.until:
                name = f"Wait until {state.until}"
            else:
                name = f"Wait {format_duration(state.delay_ms)}"
            name = state.name or name
            if state.attached_to:
                host = self.register(self.states[state.attached_to])
                self.boundary_hosts[state.id] = state.attached_to
                attrs = {
                    "attachedToRef": host.id,
                    "cancelActivity": "false" if state.interrupting is False else "true",
                }
                return _Node(f"BoundaryEvent_{base}", b("boundaryEvent"), "event", name=name,
                             attrs=attrs, definition=self.timer_definition(state))
            return _Node(f"IntermediateCatchEvent_{base}", b("intermediateCatchEvent"), "event",
                         name=name, definition=self.timer_definition(state))
        if isinstance(state, StopState):
            return _Node(f"EndEvent_{base}", b("endEvent"), "event", name=state.reason or "End",
                         definition=ET.Element(b("terminateEventDefinition")))
        raise GraphError(f"Unsupported IR state kind: {type(state).__name__}", state_id=state.id)

    def register(self, state: IRState) -> _Node:
        existing = self.node_by_state.get(state.id)
        if existing is not None:
            return existing
        node = self.node_for(state)
        self.node_by_state[state.id] = node
        self.nodes.append(node)
        lane = self.lane_for(state)
        self.assign_lane(node.id, lane)

        if isinstance(state, ParallelState):
            # parallels naming the same join state share one join gateway
            join = self.join_gateway_by_target.get(state.join)
            if join is None:
                join = _Node(f"ParallelGateway_{sanitize_id(state.id)}_Join", b("parallelGateway"), "gateway",
                             name=f"{state.id} Join")
                self.nodes.append(join)
                self.join_gateway_by_target[state.join] = join
                self.assign_lane(join.id, lane)
            self.join_gateway_by_parallel[state.id] = join
        return node

    # --- flows ---

    def add_flow(
        self,
        source: _Node,
        target_state: str,
        condition: Optional[str] = None,
        is_default: bool = False,
        bypass_join: bool = False,
    ) -> None:
        target = None if bypass_join else self.join_gateway_by_target.get(target_state)
        if target is None:
            state = self.states.get(target_state)
            if state is None:
                raise GraphError(f"Unknown IR state referenced: {target_state}", state_id=target_state)
            target = self.register(state)
        flow = _Flow(f"Flow_{len(self.flows) + 1}", source.id, target.id, condition)
        self.flows.append(flow)
        source.outgoing.append(flow.id)
        target.incoming.append(flow.id)
        if is_default:
            source.default_flow = flow.id

    def wire(self, state: IRState) -> None:
        node = self.node_by_state[state.id]
        if isinstance(state, (TaskState, UserTaskState, SendState, ReceiveState, WaitState)):
            if state.next and self.boundary_hosts.get(state.next) != state.id:
                self.add_flow(node, state.next)
        elif isinstance(state, ChoiceState):
            for branch in state.branches:
                self.add_flow(node, branch.next, condition=branch.cond)
            if state.otherwise:
                self.add_flow(node, state.otherwise, is_default=True)
        elif isinstance(state, CaseState):
            for case in state.cases:
                self.add_flow(node, case.next, condition=format_case_condition(state.expression, case.value))
            if state.default:
                self.add_flow(node, state.default, is_default=True)
        elif isinstance(state, ParallelState):
            for branch in state.branches:
                self.add_flow(node, branch)
            join = self.join_gateway_by_parallel[state.id]
            if not join.outgoing:
                self.add_flow(join, state.join, bypass_join=True)
        elif isinstance(state, StopState):
            pass
        else:
            raise GraphError(f"Unsupported IR state kind: {type(state).__name__}", state_id=state.id)

    # --- assembly ---

    def emit(self) -> str:
        validate_ir(self.ir)

        if self.ir.metadata is not None:
            for hint in self.ir.metadata.lanes:
                lane = self.ensure_lane(hint.name or hint.id, hint.kind or "system")
                self.lane_alias[hint.id.lower()] = lane

        for state in self.ir.states:
            self.register(state)

        start = _Node(f"StartEvent_{sanitize_id(self.ir.start)}", b("startEvent"), "event", name="Start")
        self.nodes.insert(0, start)
        self.assign_lane(start.id, self.ensure_lane(*CONTROL_LANE))

        self.add_flow(start, self.ir.start)
        for state in self.ir.states:
            self.wire(state)

        xml = XML_DECLARATION + "\n" + self.render()
        logger.debug("Emitted BPMN for %r: %d nodes, %d flows", self.ir.name, len(self.nodes), len(self.flows))
        return xml

    def render(self) -> str:
        process_id = f"Process_{sanitize_id(self.ir.name)}"
        executable = bool(self.ir.metadata and self.ir.metadata.executable)

        definitions = ET.Element(b("definitions"), {
            "id": f"Definitions_{sanitize_id(self.ir.name)}",
            "targetNamespace": TARGET_NAMESPACE,
        })
        for message_id, name in self.messages.items():
            ET.SubElement(definitions, b("message"), {"id": message_id, "name": name})

        process = ET.SubElement(definitions, b("process"), {
            "id": process_id,
            "name": self.ir.name,
            "isExecutable": "true" if executable else "false",
        })

        active_lanes = [lane for lane in self.lanes if lane.refs]
        if active_lanes:
            lane_set = ET.SubElement(process, b("laneSet"), {"id": f"LaneSet_{sanitize_id(self.ir.name)}"})
            for lane in active_lanes:
                lane_el = ET.SubElement(lane_set, b("lane"), {"id": lane.id, "name": lane.name})
                for ref in lane.refs:
                    ET.SubElement(lane_el, b("flowNodeRef")).text = ref

        for node in self.nodes:
            attrs = {"id": node.id}
            if node.name:
                attrs["name"] = node.name
            attrs.update(node.attrs)
            if node.default_flow:
                attrs["default"] = node.default_flow
            el = ET.SubElement(process, node.tag, attrs)
            if node.documentation:
                ET.SubElement(el, b("documentation")).text = node.documentation
            for flow_id in node.incoming:
                ET.SubElement(el, b("incoming")).text = flow_id
            for flow_id in node.outgoing:
                ET.SubElement(el, b("outgoing")).text = flow_id
            if node.definition is not None:
                el.append(node.definition)

        for flow in self.flows:
            el = ET.SubElement(process, b("sequenceFlow"), {
                "id": flow.id,
                "sourceRef": flow.source,
                "targetRef": flow.target,
            })
            if flow.condition:
                expr = ET.SubElement(el, b("conditionExpression"), {f"{{{XSI_NS}}}type": "bpmn:tFormalExpression"})
                expr.text = flow.condition

        self.render_diagram(definitions, process_id, active_lanes)
        ET.indent(definitions, space="  ")
        return ET.tostring(definitions, encoding="unicode")

    def layout(self, active_lanes: list[_Lane]) -> dict[str, _Bounds]:
        row = {lane.id: i for i, lane in enumerate(active_lanes)}
        boundary_ids = {n.id: n.attrs["attachedToRef"] for n in self.nodes if n.tag == b("boundaryEvent")}
        bounds: dict[str, _Bounds] = {}
        column = 0
        for node in self.nodes:
            if node.id in boundary_ids:
                continue
            width, height = SIZES[node.kind]
            lane = self.lane_by_node.get(node.id)
            lane_y = row.get(lane.id, 0) * LANE_HEIGHT if lane else 0
            center_x = LANE_HEADER + LEFT_MARGIN + column * COLUMN_WIDTH
            bounds[node.id] = _Bounds(center_x - width / 2, lane_y + (LANE_HEIGHT - height) / 2, width, height)
            column += 1
        for node_id, host_id in boundary_ids.items():
            host = bounds[host_id]
            width, height = SIZES["event"]
            bounds[node_id] = _Bounds(host.x + host.width - width, host.y + host.height - height / 2, width, height)
        return bounds

    def render_diagram(self, definitions: ET.Element, process_id: str, active_lanes: list[_Lane]) -> None:
        bounds = self.layout(active_lanes)
        columns = len([n for n in self.nodes if n.tag != b("boundaryEvent")])
        lane_width = LANE_HEADER + LEFT_MARGIN + columns * COLUMN_WIDTH

        diagram = ET.SubElement(definitions, f"{{{BPMNDI_NS}}}BPMNDiagram", {"id": f"BPMNDiagram_{sanitize_id(self.ir.name)}"})
        plane = ET.SubElement(diagram, f"{{{BPMNDI_NS}}}BPMNPlane", {
            "id": f"BPMNPlane_{sanitize_id(self.ir.name)}",
            "bpmnElement": process_id,
        })

        for i, lane in enumerate(active_lanes):
            self.add_shape(plane, lane.id, _Bounds(0, i * LANE_HEIGHT, lane_width, LANE_HEIGHT), horizontal=True)
        for node in self.nodes:
            self.add_shape(plane, node.id, bounds[node.id])
        for flow in self.flows:
            edge = ET.SubElement(plane, f"{{{BPMNDI_NS}}}BPMNEdge", {"id": f"{flow.id}_di", "bpmnElement": flow.id})
            for x, y in compute_waypoints(bounds[flow.source], bounds[flow.target]):
                ET.SubElement(edge, f"{{{DI_NS}}}waypoint", {"x": _coord(x), "y": _coord(y)})

    def add_shape(self, plane: ET.Element, element_id: str, box: _Bounds, horizontal: bool = False) -> None:
        attrs = {"id": f"{element_id}_di", "bpmnElement": element_id}
        if horizontal:
            attrs["isHorizontal"] = "true"
        shape = ET.SubElement(plane, f"{{{BPMNDI_NS}}}BPMNShape", attrs)
        ET.SubElement(shape, f"{{{DC_NS}}}Bounds", {
            "x": _coord(box.x),
            "y": _coord(box.y),
            "width": _coord(box.width),
            "height": _coord(box.height),
        })


def _coord(value: float) -> str:
    value = round(value, 2)
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}".rstrip("0")


def compute_waypoints(source: _Bounds, target: _Bounds) -> list[tuple[float, float]]:
    """Right-middle of source to left-middle of target, with an elbow when they are apart."""
    start = (source.x + source.width, source.y + source.height / 2)
    end = (target.x, target.y + target.height / 2)
    if abs(end[0] - start[0]) < 40:
        return [start, end]
    mid_x = (start[0] + end[0]) / 2
    return [start, (mid_x, start[1]), (mid_x, end[1]), end]


def to_bpmn_xml(ir: IR) -> str:
    """Render IR as a complete BPMN 2.0 document. Raises GraphError for an invalid graph."""
    return BpmnEmitter(ir).emit()
