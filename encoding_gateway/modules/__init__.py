"""Application modules.

- encoding: Encode job dispatch over Pub/Sub and webhook-driven state tracking
"""
