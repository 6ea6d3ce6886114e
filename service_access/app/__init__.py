"""
Door access service for the Heimdall controller.

Resolves a presented NFC tag to a grant/deny verdict and manages the
tag-to-member bindings and membership eligibility behind that decision.

- app.identity: Tag/Member model, identity store and persistence backends.
- app.rules: Eligibility evaluator (the decision table).
- app.cache: In-process tag cache with explicit invalidation.
- app.membership: Membership-truth source client and background sync.
- app.audit: Append-only access event log.
- app.resolver: Per-presentation facade used by the door hardware path.
- app.main: HTTP surface for resolution and administration.

Guidelines:
- A door never fails open: every failure on the resolution path is a deny.
- Store mutations invalidate the cache before they return.
- Membership status is fetched or marked stale, never made up locally.
"""
