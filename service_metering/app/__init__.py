"""
Metering service package.

Every costed call is authorized by a verified identity and paid for from the
caller's token balance exactly once, with a refund when the paid work fails.

Structure:
- app.main: FastAPI app, routes, and wiring.
- app.auth: JWKS key ring and bearer token verification.
- app.ledger: Ledger store contract, PostgreSQL and in-memory backends, access modes.
- app.spend: Charge, work and refund orchestration.
- app.grants: Monthly grant scheduler and spend reconciler.
- app.adapters: HTTP client for the paid decode upstream.
"""
