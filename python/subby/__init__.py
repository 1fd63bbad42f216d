"""
subby: publish messages to Google Cloud Pub/Sub over HTTPS with automatic
credential discovery (service account key or GCE metadata).

Usage:
    from subby.pubsub.client import PubSub

    async with await PubSub.from_env() as pubsub:
        message_id = await pubsub.topic("events").publish({"hello": "world"})
"""

__version__ = "0.1.0"
