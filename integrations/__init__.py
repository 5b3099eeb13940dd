"""
integrations — destinations a submission is mirrored into.

Each destination (Sheets, Calendar, Drive, email) exposes
``deliver(context) -> DeliveryOutcome`` so the dispatcher can treat them
uniformly.  Google destinations share the authorised-request plumbing in
``integrations.google_api``: bearer auth, exactly one refresh-and-retry on
401, HTTP status classification, and bounded retries for transient errors.
"""
