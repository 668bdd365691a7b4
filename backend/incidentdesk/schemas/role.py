from pydantic import BaseModel


class RoleAssignment(BaseModel):
    user_id: str
    role_name: str
    scope_type: str
    scope_id: str | None = None
