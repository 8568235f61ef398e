"""Delivery status vocabulary and the Communication Log Store.

``status`` holds the canonical states and the provider event mappings;
``store`` owns ``CommunicationLog`` and ``NotificationDeliveryLog`` rows
and is the only writer of delivery status.
"""
