"""
Entitlement sync application package.

Answers "may this identity open this content bundle?" and keeps the answer
consistent across the sessions of one account:
- Request layer: cached, deduplicated, rate limited HTTP with retries
- Remote source: the purchases / redeem-codes backend
- Local cache: per-identity entitlement records on memory, disk or Redis
- Resolver: cache, session data and remote checks combined into one answer
- Realtime channel: push updates between sibling sessions
- Session manager: identity switching and the stored-accounts list

Structure:
- app.main: configuration wiring and the command line entrypoint.
- app.http: request executor.
- app.remote: remote entitlement source.
- app.cache: storage backends, entitlement cache, redemption ledger.
- app.resolver: resolution engine and collaborator protocols.
- app.realtime: channel and websocket transport.
- app.session: account store and switch manager.
"""
