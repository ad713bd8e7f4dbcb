# secretbroker/models/identifier.py

from pydantic import BaseModel, ConfigDict, Field


class SecretMessageIdentifier(BaseModel):
    """
    Handle returned by `save.msg` and presented to `receive.msg`.
    Only the camelCase wire names are accepted, and only the base64 form of
    the key is ever serialized; unknown fields such as a producer-side
    `secretKey` are dropped on parse.
    """
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(alias="messageId")
    aes_key: str = Field(alias="aesKey")

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


class ErrorReply(BaseModel):
    error: str

    def to_json(self) -> bytes:
        return self.model_dump_json().encode("utf-8")
