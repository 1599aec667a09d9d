"""
Account provisioning.

Creates a login in the authentication service plus the matching profile (and, for
sellers/merchandisers, the role record) without touching the operator's own session.

Flow per create request:
- isolated auth context (private storage, no Authorization header, no persistence)
- sign-up -> profile insert -> role record insert
- on failure after sign-up: delete rows written by the attempt; the identity stays
  and is audited as an orphan for out-of-band cleanup
"""
