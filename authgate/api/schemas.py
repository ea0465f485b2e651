from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GraphQLRequest(BaseModel):
    """Body of ``POST /api/graphql``.

    Operation arguments are read from ``variables``; inline literals in the
    query text are not parsed.
    """

    model_config = ConfigDict(extra="ignore")

    query: str = Field(..., max_length=20_000)
    operationName: Optional[str] = Field(default=None, max_length=256)
    variables: Dict[str, Any] = Field(default_factory=dict)
    recaptchaToken: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("variables", mode="before")
    @classmethod
    def _default_variables(cls, value: Any) -> Any:
        return {} if value is None else value


class GraphQLErrorExtensions(BaseModel):
    code: str


class GraphQLError(BaseModel):
    message: str
    extensions: GraphQLErrorExtensions


class GraphQLResponse(BaseModel):
    data: Optional[Dict[str, Any]] = None
    errors: Optional[List[GraphQLError]] = None


class ChangePasswordData(BaseModel):
    password: str = Field(default="", max_length=1024)
    confirmPassword: str = Field(default="", max_length=1024)


class RecaptchaConfigResponse(BaseModel):
    enabled: bool
    siteKey: str
