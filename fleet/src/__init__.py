"""
Trailer fleet monitoring package.

Polls two device fleets (solar/battery controllers via VRM and cellular
routers via InControl2), reconciles their identities, keeps a rolling daily
energy ledger per trailer, raises deficit alerts, clusters trailers into
job-site locations by GPS proximity, and scores per-trailer performance.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""
