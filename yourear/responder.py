"""The responder module turns key presses into answers for the session."""

import asyncio
import logging
import sys
import threading

QUIT_KEYS = ('q', 'quit', 'exit')


class ConsoleResponder:
    """Read answers from a text stream on a background thread.

    Pressing Enter counts as "heard". Typing ``q`` stops the test. Silence
    needs no key: the session's response timeout records "not heard".

    Console reads block, so they happen on a daemon thread; every answer is
    handed to the event loop with ``call_soon_threadsafe`` and the session is
    only ever touched from the loop thread.
    """

    def __init__(self, session, loop, stream=None, on_quit=None):
        """
        Args:
            session: The ``TestSession`` receiving the answers.
            loop: Event loop the session runs on.
            stream: Text stream to read lines from, ``sys.stdin`` by default.
            on_quit: Called on the loop thread when the user asks to quit.
        """
        self._session = session
        self._loop = loop
        self._stream = stream if stream is not None else sys.stdin
        self._on_quit = on_quit
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._read_loop,
                                        name='console-responder', daemon=True)
        self._pending = set()

    def start(self):
        self._thread.start()

    def close(self):
        """Stop dispatching answers. A blocked read is left to the daemon."""
        self._closed.set()

    def _read_loop(self):
        for line in self._stream:
            if self._closed.is_set():
                break
            if line.strip().lower() in QUIT_KEYS:
                self._dispatch(self._quit)
                break
            self._dispatch(self._heard)

    def _dispatch(self, callback):
        try:
            self._loop.call_soon_threadsafe(callback)
        except RuntimeError:
            # Loop already closed at shutdown.
            self._closed.set()

    def _heard(self):
        if self._closed.is_set():
            return
        task = asyncio.ensure_future(self._session.respond_heard())
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _quit(self):
        logging.info("Quit requested from console")
        self._session.stop()
        if self._on_quit is not None:
            self._on_quit()

    def _on_done(self, task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.error("Could not process answer: %s", task.exception())

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.close()
