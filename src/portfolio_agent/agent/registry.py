from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping

from ..models import ResultEnvelope, ToolDescriptor

ToolHandler = Callable[[Mapping[str, Any]], Awaitable[ResultEnvelope]]


@dataclass(frozen=True)
class Capability:
    """A tool the model may call: its advertised descriptor and its handler."""

    descriptor: ToolDescriptor
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.descriptor.name


class ToolRegistry:
    """Immutable name -> capability mapping, built once at startup."""

    def __init__(self, capabilities: Iterable[Capability]) -> None:
        self._capabilities: Dict[str, Capability] = {}
        for capability in capabilities:
            if capability.name in self._capabilities:
                raise ValueError(f"Duplicate tool name: {capability.name}")
            self._capabilities[capability.name] = capability

    def list(self) -> List[ToolDescriptor]:
        """Descriptors in registration order."""
        return [c.descriptor for c in self._capabilities.values()]

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def names(self) -> List[str]:
        return list(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
