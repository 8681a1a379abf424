"""
Events module.

In-process publication of committed inventory changes, streamed to clients
over Server-Sent Events.
"""
