# tigerflow/record.py

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .core import Graph


@dataclass(frozen=True)
class PassEvent:
    """
    Lightweight description of one layer execution captured during a pass.
    """

    pass_index: int
    kind: str
    layer: str
    id: int
    order: int


class Trace:
    """
    Recording of Graph passes.

    Responsibilities:
      - Capture the order in which layers ran, per forward/backward pass.
      - Count passes and layer executions for quick inspection.
    """

    def __init__(self, graph: Graph) -> None:
        self.graph = graph
        self._events: List[PassEvent] = []
        self._layer_runs: Dict[str, int] = {}
        self._passes: Dict[str, int] = {"forward": 0, "backward": 0}
        self._updates = 0
        self._active = False

    # ------------------------------------------------------------------ control
    def start(self) -> None:
        if self._active:
            return
        self._events.clear()
        self._layer_runs.clear()
        self._passes = {"forward": 0, "backward": 0}
        self._updates = 0
        self.graph.register_event_listener(self._handle_event)
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self.graph.unregister_event_listener(self._handle_event)
        self._active = False

    # ---------------------------------------------------------------- listeners
    def _handle_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("event")
        if kind in ("layer_forward", "layer_backward"):
            event = PassEvent(
                pass_index=int(payload["index"]),
                kind=str(payload["pass"]),
                layer=str(payload["layer"]),
                id=int(payload["id"]),
                order=int(payload["order"]),
            )
            self._events.append(event)
            self._layer_runs[event.layer] = self._layer_runs.get(event.layer, 0) + 1
        elif kind == "pass_end":
            name = str(payload["pass"])
            self._passes[name] = self._passes.get(name, 0) + 1
        elif kind == "weights_updated":
            self._updates += 1

    # ----------------------------------------------------------------- metadata
    @property
    def events(self) -> Tuple[PassEvent, ...]:
        return tuple(self._events)

    def order(self, kind: str = "forward", pass_index: Optional[int] = None) -> List[str]:
        """
        Layer names in execution order for one pass of ``kind``.

        Defaults to the most recent pass of that kind.
        """
        matching = [e for e in self._events if e.kind == kind]
        if not matching:
            return []
        index = pass_index if pass_index is not None else matching[-1].pass_index
        return [e.layer for e in sorted(matching, key=lambda e: e.order) if e.pass_index == index]

    def summary(self) -> Dict[str, Any]:
        return {
            "forward_passes": self._passes.get("forward", 0),
            "backward_passes": self._passes.get("backward", 0),
            "updates": self._updates,
            "layers": dict(self._layer_runs),
            "events": len(self._events),
        }


@contextmanager
def record(graph: Graph) -> Iterator[Trace]:
    """
    Context manager to record the passes run on a Graph.

    Usage:
        with tigerflow.record(g) as trace:
            g.forward({"input": batch})
        trace.order("forward")
    """
    trace = Trace(graph)
    trace.start()
    try:
        yield trace
    finally:
        trace.stop()
