from flask import current_app


def dispatch_events(events, sender=None):
    """
    Forward committed domain events to the notification channel.
    Args:
        events: list of event dicts (see services/events.build_event)
        sender: Optional callable receiving each payload
    Behavior:
        - Log a one-line [NOTIFY] event per domain event
        - Build a payload for the delivery integration
        - Never break main flow (catch and log all exceptions)
    Returns:
        list of payloads that were built
    """
    payloads = []
    for event in events or []:
        try:
            payload = {
                'event_type': event['event_type'],
                'quotation_id': event.get('quotation_id'),
                'revision_version': event.get('revision_version'),
                'actor_id': event.get('actor_id'),
                'metadata': event.get('metadata') or {},
                'timestamp_utc': event.get('timestamp'),
            }
            current_app.logger.info(
                '[NOTIFY] event=%s quotation_id=%s revision=%s actor_id=%s',
                payload['event_type'], payload['quotation_id'], payload['revision_version'], payload['actor_id']
            )
            if sender is not None:
                sender(payload)
            payloads.append(payload)
        except Exception as e:
            current_app.logger.exception('[NOTIFY] Notification failed: %s', e)
    return payloads
