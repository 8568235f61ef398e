"""Outbound notification delivery.

Channel senders are injected behind the ``ChannelSender`` protocol; the
dispatcher never constructs provider clients itself and records every
attempt in the Communication Log Store.
"""
