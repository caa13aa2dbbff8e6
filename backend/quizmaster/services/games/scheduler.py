import itertools
import threading
from typing import Dict, Optional

from flask import current_app, has_app_context

from quizmaster.models import utcnow
from . import store


ROUND = 'round'
REVEAL = 'reveal'


class _Handle:
    __slots__ = ('token', 'kind', 'deadline', 'round_id')

    def __init__(self, token, kind, deadline, round_id=None):
        self.token = token
        self.kind = kind
        self.deadline = deadline
        self.round_id = round_id


class RoundTimers:
    """Per-session deadline timers.

    - At most one handle per session; arming replaces the previous handle
    - A handle fires once: the sleeper re-checks its token before dispatching,
      so cancelled or replaced handles abort silently
    - The table is advisory; ``recover()`` rebuilds it from stored deadlines
    - Sleepers run through the injected ``spawn``/``sleep`` (Socket.IO background tasks)
    - In TESTING no sleeper is spawned unless ENABLE_SCHEDULER_IN_TESTS is set;
      ``fire()`` dispatches a handle on demand
    """

    def __init__(self, app, spawn, sleep):
        self.app = app
        self._spawn = spawn
        self._sleep = sleep
        self._handles: Dict[int, _Handle] = {}
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._engine = None

    def bind(self, engine) -> None:
        self._engine = engine

    @property
    def autostart(self) -> bool:
        cfg = self.app.config
        return not (cfg.get('TESTING') and not cfg.get('ENABLE_SCHEDULER_IN_TESTS'))

    def now(self):
        return self._engine.clock() if self._engine is not None else utcnow()

    # ---- Table operations ----

    def arm_round(self, session_id: int, round_id: int, ends_at) -> int:
        return self._arm(session_id, ROUND, ends_at, round_id)

    def arm_reveal(self, session_id: int, until) -> int:
        return self._arm(session_id, REVEAL, until)

    def _arm(self, session_id, kind, deadline, round_id=None) -> int:
        handle = _Handle(next(self._tokens), kind, deadline, round_id)
        with self._lock:
            replaced = self._handles.get(session_id)
            self._handles[session_id] = handle
        delay = max(0.0, (deadline - self.now()).total_seconds())
        self.app.logger.info(
            f"[timer-set] session={session_id} kind={kind} round={round_id} delay={delay:.1f}s"
            f" replaced={replaced.token if replaced else None}"
        )
        if self.autostart:
            self._spawn(self._run, session_id, handle.token, delay)
        return handle.token

    def cancel(self, session_id: int) -> bool:
        with self._lock:
            handle = self._handles.pop(session_id, None)
        if handle:
            self.app.logger.info(f"[timer-cancel] session={session_id} kind={handle.kind} round={handle.round_id}")
        return handle is not None

    def deadline(self, session_id: int):
        with self._lock:
            handle = self._handles.get(session_id)
        return handle.deadline if handle else None

    def kind(self, session_id: int) -> Optional[str]:
        with self._lock:
            handle = self._handles.get(session_id)
        return handle.kind if handle else None

    def pending(self) -> Dict[int, tuple]:
        with self._lock:
            return {sid: (h.kind, h.deadline) for sid, h in self._handles.items()}

    def reset(self) -> None:
        with self._lock:
            self._handles.clear()

    def fire(self, session_id: int) -> bool:
        """Dispatch the session's handle now, as if its deadline had passed."""
        with self._lock:
            handle = self._handles.get(session_id)
        if handle is None:
            return False
        return self._fire(session_id, handle.token)

    # ---- Worker ----

    def _run(self, session_id: int, token: int, delay: float) -> None:
        # heartbeat sleep loop if enabled
        try:
            hb = int(self.app.config.get('TIMER_HEARTBEAT_SEC', 0))
        except (TypeError, ValueError):
            hb = 0
        if hb > 0:
            slept = 0.0
            while slept < delay:
                step = min(hb, delay - slept)
                self._sleep(step)
                slept += step
                self.app.logger.info(f"[timer-heartbeat] session={session_id} remaining={max(0, delay - slept):.1f}s")
        else:
            self._sleep(delay)
        self._fire(session_id, token)

    def _fire(self, session_id: int, token: int) -> bool:
        with self._lock:
            handle = self._handles.get(session_id)
            if handle is None or handle.token != token:
                self.app.logger.info(f"[timer-abort] session={session_id} token={token} cancelled or replaced")
                return False
            del self._handles[session_id]
        self.app.logger.info(f"[timer-fire] session={session_id} kind={handle.kind} round={handle.round_id}")
        try:
            if has_app_context() and current_app._get_current_object() is self.app:
                self._dispatch(session_id, handle)
            else:
                with self.app.app_context():
                    self._dispatch(session_id, handle)
        except Exception:
            self.app.logger.exception(f"[timer-error] session={session_id} kind={handle.kind} callback failed")
        return True

    def _dispatch(self, session_id: int, handle: _Handle) -> None:
        if handle.kind == ROUND:
            self._engine.end_round_no_winner(session_id, reason='time expired', round_id=handle.round_id)
        else:
            self._engine.finish_reveal(session_id)

    # ---- Restart recovery ----

    def recover(self) -> Dict[str, list]:
        """Tear the table down and rebuild it from stored round deadlines.

        Must run inside an app context. Rounds already past their deadline are
        resolved immediately; the rest are re-armed for the remaining time.
        One failing session is logged and skipped.
        """
        self.reset()
        outcome = {'expired': [], 'armed': [], 'revealed': [], 'failed': []}
        pending = []
        for game in store.sessions_with_pending_rounds():
            rnd = game.current_round
            pending.append((game.id, game.status, rnd.id if rnd else None, rnd.ends_at if rnd else None))

        for session_id, status, round_id, ends_at in pending:
            try:
                if status == 'ended':
                    self._engine.finish_reveal(session_id)
                    outcome['revealed'].append(session_id)
                elif round_id is None or ends_at is None:
                    self._engine.end_round_no_winner(session_id, reason='recovered: no deadline')
                    outcome['expired'].append(session_id)
                elif ends_at <= self.now():
                    self._engine.end_round_no_winner(session_id, reason='recovered: already expired', round_id=round_id)
                    outcome['expired'].append(session_id)
                else:
                    self.arm_round(session_id, round_id, ends_at)
                    outcome['armed'].append(session_id)
            except Exception:
                self.app.logger.exception(f"[recover] session={session_id} could not be recovered")
                outcome['failed'].append(session_id)
        self.app.logger.info(
            f"[recover] expired={len(outcome['expired'])} armed={len(outcome['armed'])}"
            f" revealed={len(outcome['revealed'])} failed={len(outcome['failed'])}"
        )
        return outcome
