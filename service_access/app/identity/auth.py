"""
Additional tag authentication for the access service.
"""

from typing import Optional, Protocol

from .models import Tag


class TagAuthenticator(Protocol):
    """Performs the check a tag's auth_method calls for.

    The core stores auth_method and auth_data without interpreting them.
    response is whatever the door collected alongside the tag, such as a
    keypad PIN or a challenge answer, and None when nothing was collected.
    """

    async def authenticate(self, tag: Tag, response: Optional[str]) -> bool:
        ...
