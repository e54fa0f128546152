# palenque/sse_events.py
import queue
import json
import time
import threading
import logging

log = logging.getLogger(__name__)

KEEP_ALIVE_SECONDS = 15
LISTENER_QUEUE_SIZE = 100

# Every connected client gets its own queue; channels=None means "all channels".
_listeners = []
_listeners_lock = threading.Lock()


def subscribe(channels=None):
    listener = {'queue': queue.Queue(maxsize=LISTENER_QUEUE_SIZE),
                'channels': set(channels) if channels else None}
    with _listeners_lock:
        _listeners.append(listener)
    return listener


def unsubscribe(listener):
    with _listeners_lock:
        if listener in _listeners:
            _listeners.remove(listener)


def announce_event(event_type, data, channel=None):
    """
    Fans an event out to every listener subscribed to `channel`.
    Channels follow the room names clients join: 'event_<id>' and 'user_<id>'.
    Events without a channel go to everyone.
    """
    log.info(f"Announcing SSE event: Type='{event_type}', Channel='{channel}', Data='{str(data)[:100]}...'")
    event = {'type': event_type, 'data': data, 'channel': channel}
    with _listeners_lock:
        listeners = list(_listeners)
    for listener in listeners:
        wanted = listener['channels']
        if channel is not None and wanted is not None and channel not in wanted:
            continue
        try:
            listener['queue'].put_nowait(event)
        except queue.Full:
            # Client stopped reading; drop it rather than block the announcer
            log.warning("SSE listener queue full, dropping listener.")
            unsubscribe(listener)


def format_sse(event):
    payload = dict(event['data'], channel=event['channel']) if isinstance(event['data'], dict) else event['data']
    return f"event: {event['type']}\ndata: {json.dumps(payload)}\n\n"


def sse_event_stream_generator(channels=None):
    client_id = str(time.time()) # Simple ID for this connection instance
    listener = subscribe(channels)
    log.info(f"SSE Client [{client_id}] connected to channels {sorted(channels) if channels else 'ALL'}.")
    events_sent_this_connection = 0
    try:
        while True:
            try:
                event = listener['queue'].get(timeout=KEEP_ALIVE_SECONDS)
                log.debug(f"SSE Client [{client_id}]: Sending {event['type']}")
                yield format_sse(event)
                events_sent_this_connection += 1
            except queue.Empty:
                yield ": keep-alive\n\n"
    except GeneratorExit: #raised when the client disconnects
        log.info(f"SSE Client [{client_id}] disconnected. Sent {events_sent_this_connection} events.")
    finally:
        unsubscribe(listener)
