from typing import Literal

from pydantic import BaseModel, Field

Action = Literal["create", "read", "edit", "delete"]


class FieldPermission(BaseModel):
    read: bool = False
    edit: bool = False


class EntityPermission(BaseModel):
    create: bool = False
    read: bool = False
    edit: bool = False
    delete: bool = False
    fields: dict[str, FieldPermission] = Field(default_factory=dict)


class UserPermissions(BaseModel):
    user_id: str
    is_admin: bool
    entities: dict[str, EntityPermission] = Field(default_factory=dict)


class SyncResponse(BaseModel):
    success: bool = True
    count: int
    message: str


class CheckResponse(BaseModel):
    allowed: bool


class RoleAssignRequest(BaseModel):
    role_external_id: str = Field(min_length=1, max_length=64)


class OkResponse(BaseModel):
    success: bool = True
