from pydantic import BaseModel


class CommentCreate(BaseModel):
    body: str
    visibility: str = "public"
    is_markdown: bool = False


class CommentUpdate(BaseModel):
    body: str | None = None
    visibility: str | None = None
    is_markdown: bool | None = None
