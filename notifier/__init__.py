"""Event-driven notification dispatch for the telemedicine platform.

Watches the realtime database for appointments, uploaded files, chat
messages and payment changes, and turns them into push notifications.
Domain models live in ``notifier.domain``; wiring and delivery live in
``notifier.services``.
"""
