from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    firstName: str
    lastName: str
    email: str
    profilePhoto: Optional[str]
    role: str
