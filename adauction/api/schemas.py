"""Request bodies for the HTTP API (camelCase on the wire)."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BidBody(ApiModel):
    thinking: Optional[str] = None
    strategy: Optional[str] = None


class ReflectionBody(ApiModel):
    agent_id: str = Field(alias="agentId")
    reflection: str


class RefundRequestBody(ApiModel):
    agent_id: str = Field(alias="agentId")
    wallet_address: str = Field(alias="walletAddress")
    reasoning: str = ""


class SkipBody(ApiModel):
    agent_id: str = Field(alias="agentId")
    reasoning: str = ""


class CreativeAuthorizeBody(ApiModel):
    agent_id: str = Field(alias="agentId")


class CreativeResultBody(ApiModel):
    url: str
    prompt: str = ""
    task_ref: str = Field(default="", alias="taskRef")
