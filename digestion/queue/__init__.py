"""
Digestion queue: broker adapter, job publisher, consumer pipeline, retry
policy, and shutdown coordination.
"""
