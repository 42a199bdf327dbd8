# Pydantic Schemas Package
from .returns import ReturnActionRequest, ReturnResponse

__all__ = ["ReturnActionRequest", "ReturnResponse"]
