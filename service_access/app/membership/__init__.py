"""
Membership package: the boundary to the external membership-truth source.

- source: MembershipSource protocol and the httpx-backed client.
- sync: MembershipSync, which writes fetched status back into the identity
  store on a schedule or on demand.
"""

from .source import MembershipReport, MembershipSource, HttpMembershipSource
from .sync import MembershipSync

__all__ = ["MembershipReport", "MembershipSource", "HttpMembershipSource", "MembershipSync"]
