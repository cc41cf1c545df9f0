"""Runtime supervision: identity, port binding and periodic health probing.

`Supervisor` ties the pieces together for `shipyard supervise`; the parts are
usable on their own (`shipyard healthcheck` runs a single `HttpProbe`).
"""
