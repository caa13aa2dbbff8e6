from flask import Blueprint, Response, current_app, stream_with_context
from quizmaster.services.games.runtime import get_runtime


stream = Blueprint('stream', __name__)


@stream.route('/<path:topic>', methods=['GET'])
def subscribe(topic):
    """
    Server-Sent Events stream of every event published on a topic
    (e.g. ``session:12``). Idle streams receive ``ping`` events.
    """
    subscription = get_runtime().broker.subscribe(topic)
    keepalive = float(current_app.config.get('SSE_KEEPALIVE_SEC', 15)) or None

    def generate():
        try:
            for event in subscription.events(keepalive=keepalive):
                yield event.to_sse()
        finally:
            subscription.close()

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
