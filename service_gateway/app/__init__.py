"""
API Gateway Service package for the Songbook API.

The gateway fronts the song/chords content service, enforcing:
- Authentication: bearer tokens verified by the identity provider
- Rate limiting: tiered per-endpoint windows with block escalation,
  failing open when the counter store is unavailable

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: HTTP clients for the identity provider and content service.
- app.auth: Caller principal model.
- app.ratelimit: Policy tables, counter stores, engine and request guard.
- app.domain: Cross-cutting domain helpers (e.g., auth middleware).
"""
