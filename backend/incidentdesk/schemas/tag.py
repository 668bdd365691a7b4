from pydantic import BaseModel


class TagCreate(BaseModel):
    name: str
    color: str = "#3B82F6"


class TagUpdate(BaseModel):
    name: str | None = None
    color: str | None = None
