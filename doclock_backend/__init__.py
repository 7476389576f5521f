"""Backend utilities for the DocLock protect/unlock API.

This package intentionally keeps FastAPI route handlers thin:
- per-request workspace lifecycle + stale workspace sweeping
- streaming multipart ingestion with an upload ceiling
- qpdf invocation with literal argv (no shell)

Security note:
Passwords only ever travel inside argv tokens of the form --opt=value and
input/output paths always follow "--", so nothing user-controlled can be
read by qpdf as a switch. Never log passwords.
"""
