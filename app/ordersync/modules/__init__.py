"""
Order-sync feature modules: catalog, orders, orders_cache, salesdrive_sync.

Each module owns its models and services; shared plumbing (config, sessions,
history, batching) lives one level up in app.ordersync.
"""
