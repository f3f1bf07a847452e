import logging
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Type

import pydantic
from pydantic import BaseModel

from .exceptions import KRAeTIMSValidationError, UnknownSchemaError
from .schemas import SCHEMAS

logger = logging.getLogger(__name__)


def format_location(loc) -> str:
    """('itemList', 0, 'itemCd') -> 'itemList[0].itemCd'"""
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path


def format_error(error: Dict[str, Any]) -> str:
    path = format_location(error.get("loc", ()))
    if error.get("type") == "value_error" and "error" in error.get("ctx", {}):
        # Drops pydantic's "Value error, " prefix
        message = str(error["ctx"]["error"])
    else:
        message = error.get("msg", "invalid value")
    return f"{path}: {message}" if path else message


class Validator:
    """
    Validates outbound payloads against named schemas before any network call.
    Every violation is reported; validation never stops at the first failure.
    """

    def __init__(self, schemas: Optional[Mapping[str, Type[BaseModel]]] = None):
        merged = dict(SCHEMAS)
        if schemas:
            merged.update(schemas)
        self._schemas = MappingProxyType(merged)

    @property
    def schema_names(self) -> List[str]:
        return sorted(self._schemas)

    def schema(self, name: str) -> Type[BaseModel]:
        try:
            return self._schemas[name]
        except KeyError:
            raise UnknownSchemaError(f"Validation schema '{name}' not defined") from None

    def validate(self, payload: Any, schema_name: str) -> Dict[str, Any]:
        """Returns the normalized, JSON-safe payload or raises KRAeTIMSValidationError."""
        model = self.schema(schema_name)
        if not isinstance(payload, Mapping):
            raise KRAeTIMSValidationError(
                "Validation failed", [f"payload must be an object, got {type(payload).__name__}"]
            )

        try:
            instance = model.model_validate(dict(payload))
        except pydantic.ValidationError as e:
            errors = [format_error(err) for err in e.errors()]
            logger.debug("Payload rejected by schema '%s' with %d error(s)", schema_name, len(errors))
            raise KRAeTIMSValidationError("Validation failed", errors) from e

        return instance.model_dump(mode="json", exclude_none=True)
