"""
Domain events. Sent only after the atomic unit that caused them has
committed; receivers can fail without affecting accounting state.
"""

import logging

from blinker import Namespace

logger = logging.getLogger('streak_ledger.events')

_signals = Namespace()

upload_verified = _signals.signal('upload-verified')
challenge_completed = _signals.signal('challenge-completed')
streak_milestone = _signals.signal('streak-milestone')
trophies_changed = _signals.signal('trophies-changed')


def emit(signal, sender, **payload):
    """Send a signal, logging and discarding any receiver failure."""
    for receiver in list(signal.receivers_for(sender)):
        try:
            receiver(sender, **payload)
        except Exception as e:
            logger.error(f'Receiver {getattr(receiver, "__name__", receiver)} failed for {signal.name}: {e}')
