"""Background handlers for Hive.

Loops (task worker, schedule ticker) are started and stopped by the app
lifespan. Bus handlers register themselves on their event types in __init__.
"""
