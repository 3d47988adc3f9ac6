from __future__ import annotations

from typing import Optional, Protocol, Sequence

from .detection.chaining import ChainingDetectionResult
from .detection.injection import InjectionDetectionResult
from .models import ToolCall


class PromptInjectionDetector(Protocol):
    def detect(self, text: str, threshold: Optional[float] = None) -> InjectionDetectionResult:
        ...

    def analyze_multi_turn(
        self, current: str, previous: Sequence[str], threshold: Optional[float] = None
    ) -> InjectionDetectionResult:
        ...


class ToolChainingDetector(Protocol):
    def check(
        self,
        current_input: str,
        previous_calls: Sequence[ToolCall],
        proposed_tool_id: Optional[str] = None,
    ) -> ChainingDetectionResult:
        ...
