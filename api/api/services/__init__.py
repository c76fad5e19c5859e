"""Request-scoped services behind the entitlement API routers."""
