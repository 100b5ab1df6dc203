"""
Typed views over JSON columns

Conversation metadata and automation trigger conditions are stored as JSON.
They are validated into these models at the service boundary instead of being
passed around as untyped dicts.
"""
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from insurecrm.db.models import ConversationType, TriggerType


class WhatsAppConversationMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    phone_number: str = Field(..., alias="phoneNumber")
    customer_name: Optional[str] = Field(None, alias="customerName")
    credential_id: Optional[str] = Field(None, alias="credentialId")


class WidgetConversationMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    widget_id: str = Field(..., alias="widgetId")
    domain: Optional[str] = None
    page_url: Optional[str] = Field(None, alias="pageUrl")


ConversationMetadata = Union[WhatsAppConversationMetadata, WidgetConversationMetadata]


def parse_conversation_metadata(conversation_type: str, data: Optional[dict]) -> Optional[ConversationMetadata]:
    """Validate metadata for its platform; None when the type carries no typed metadata"""
    data = data or {}
    if conversation_type == ConversationType.WHATSAPP_CHAT.value:
        return WhatsAppConversationMetadata.model_validate(data)
    if conversation_type == ConversationType.WIDGET_CHAT.value:
        return WidgetConversationMetadata.model_validate(data)
    return None


class WindowExpiredConditions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Half-width of the matching window around the expiry instant
    window_tolerance_minutes: int = Field(30, ge=1, le=240)


class LabelAssignedConditions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    label_id: str = Field(..., alias="labelId")


class TimeDelayConditions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    delay_minutes: Optional[int] = Field(None, alias="delayMinutes", ge=0)


class ManualConditions(BaseModel):
    model_config = ConfigDict(extra="ignore")


TriggerConditions = Union[WindowExpiredConditions, LabelAssignedConditions, TimeDelayConditions, ManualConditions]

_CONDITION_MODELS = {
    TriggerType.CONVERSATION_WINDOW_EXPIRED.value: WindowExpiredConditions,
    TriggerType.LABEL_ASSIGNED.value: LabelAssignedConditions,
    TriggerType.TIME_DELAY.value: TimeDelayConditions,
    TriggerType.MANUAL.value: ManualConditions,
}


class InvalidTriggerConditions(ValueError):
    pass


def parse_trigger_conditions(trigger_type: str, data: Optional[dict]) -> TriggerConditions:
    model = _CONDITION_MODELS.get(trigger_type)
    if model is None:
        raise InvalidTriggerConditions(f"Unknown trigger type: {trigger_type}")
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        raise InvalidTriggerConditions(f"Invalid trigger conditions for {trigger_type}: {e}") from e
