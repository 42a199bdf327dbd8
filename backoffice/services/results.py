"""
Reconciliation results - Created | Updated | Skipped | Failed
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Union


@dataclass
class Created:
    entity: Any
    code = "CREATED"


@dataclass
class Updated:
    entity: Any
    code = "UPDATED"


@dataclass
class Skipped:
    """Non-applicable event; expected steady-state traffic, not an error"""
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)
    code = "SKIPPED"
    entity = None


@dataclass
class Failed:
    error: Exception
    code = "FAILED"
    entity = None


Result = Union[Created, Updated, Skipped, Failed]
