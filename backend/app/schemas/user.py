from typing import Optional

from pydantic import BaseModel


class UserSummary(BaseModel):

    id: str
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[str] = None
    profilePhoto: Optional[str] = None

    @classmethod
    def from_document(cls, doc: dict) -> "UserSummary":
        return cls(
            id=str(doc["_id"]),
            firstName=doc.get("firstName"),
            lastName=doc.get("lastName"),
            email=doc.get("email"),
            profilePhoto=doc.get("profilePhoto"),
        )


class TokenPayload(BaseModel):

    sub: str
    exp: Optional[int] = None
