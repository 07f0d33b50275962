"""Per-connection client configuration sent by the browser in ``configure``."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_LOCALE = "en-US"
DEFAULT_VOICE = "Orus"
DEFAULT_RESPONSE_TIMEOUT_MS = 800


class ClientConfiguration(BaseModel):
    """
    Behavioral options for one client connection.

    Wire keys are camelCase (``voiceName``, ``responseTimeout``...). Unknown
    keys are ignored. Instances are immutable; use :meth:`merge` to apply a
    ``configure`` payload.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    locale: str = Field(default=DEFAULT_LOCALE)
    voice_name: str = Field(default=DEFAULT_VOICE, alias="voiceName")
    product_name: Optional[str] = Field(default=None, alias="productName")
    product_description: Optional[str] = Field(default=None, alias="productDescription")
    product_features: List[str] = Field(default_factory=list, alias="productFeatures")
    greeting: Optional[str] = None
    system_instruction: Optional[str] = Field(default=None, alias="systemInstruction")
    response_timeout: int = Field(default=DEFAULT_RESPONSE_TIMEOUT_MS, alias="responseTimeout", ge=0)

    def merge(self, payload: Dict[str, Any]) -> "ClientConfiguration":
        """
        Return a copy with every recognized key of ``payload`` applied.

        Keys absent from the payload keep their current value; keys present
        (even with ``null``) override it. Raises ``pydantic.ValidationError``
        if the payload is not a mapping or a recognized key has a bad value.
        """
        update = ClientConfiguration.model_validate(payload)
        changed = {name: getattr(update, name) for name in update.model_fields_set}
        return self.model_copy(update=changed)

    def summary(self) -> Dict[str, Any]:
        return {
            "locale": self.locale,
            "voice_name": self.voice_name,
            "product_name": self.product_name,
            "has_system_instruction": bool(self.system_instruction),
            "has_greeting": bool(self.greeting),
            "response_timeout_ms": self.response_timeout,
        }
