from __future__ import annotations

import datetime
import logging
from queue import Empty, Queue
from threading import Thread
from typing import Optional


class SafeLogger:
    _filename: str = None

    def __init__(
        self,
        filename: str = None,
        write_mode: str = None,
        fields: Optional[dict[str, any]] = None,
    ):
        """
        SafeLogger is the logging sink of the collectors. If initialized
        with a filename (and optionally a write mode, default is w+)
        messages are written by a single consumer thread so that
        several collectors running on separate threads can share it,
        otherwise it works as a wrapper around the logging package.

        Every message is suffixed with the key/value `fields`
        attached to the logger (see `with_fields`).

        :param filename: the log file name, if `None` the class will behave as
            a simple logger
        :param write_mode: file write mode, default is `w+`
        :param fields: key/value context appended to every message
        """
        self._root = self
        self.fields = dict(fields) if fields else {}
        if filename is not None:
            self._filename = filename
            if write_mode is None:
                write_mode = "w+"
            self.filewriter = open(filename, write_mode)
            self.queue = Queue()
            self.finished = False
            Thread(
                name="SafeLogWriter", target=self.write_worker, daemon=True
            ).start()
        else:
            self.filewriter = None
            self.queue = None
            self.finished = True

    def with_fields(self, **fields) -> SafeLogger:
        """
        Returns a child logger writing on the same sink with
        additional key/value context. The fields of the parent are
        inherited and overridden by the new ones.

        >>> log = SafeLogger().with_fields(prefix="MC 10.0.0.1")
        >>> log.info("Metrics collecting started")

        :param fields: the key/value pairs to attach
        :return: the child logger
        """
        child = SafeLogger.__new__(SafeLogger)
        child._root = self._root
        child._filename = self._root._filename
        child.fields = {**self.fields, **fields}
        return child

    def _format(self, data: str) -> str:
        if not self.fields:
            return str(data)
        context = " ".join(
            f"{key}={value}" for key, value in sorted(self.fields.items())
        )
        return f"{data} {context}"

    def _to_file(self) -> bool:
        root = self._root
        return root.filewriter is not None and not root.finished

    def _write(self, level: str, data: str):
        """
        Enqueues messages that will be safely consumed
        by the logging thread

        :param level: level tag written in the file
        :param data: The message that will be enqueued
        """
        root = self._root
        if root.filewriter and root.queue:
            root.queue.put(
                f'{datetime.datetime.now().strftime("%Y-%m-%d %H:%M")} '
                f"[{level}] {self._format(data)}"
            )

    def error(self, data: str):
        """
        Safely logs an Error in the logfile if the object has been
        instantiated with a filename, otherwise logs an error using
        the standard log mechanism

        :param data: the log message
        """
        if self._to_file():
            self._write("ERR", data)
        else:
            logging.error(self._format(data))

    def warning(self, data: str):
        if self._to_file():
            self._write("WRN", data)
        else:
            logging.warning(self._format(data))

    def info(self, data: str):
        if self._to_file():
            self._write("INF", data)
        else:
            logging.info(self._format(data))

    @property
    def log_file_name(self):
        return self._filename

    def write_worker(self):
        """
        Consumer thread to log on a file
        """
        while not self.finished:
            try:
                data = self.queue.get(True)
            except Empty:
                continue
            self.filewriter.write(f"{data}\n")
            self.filewriter.flush()
            self.queue.task_done()

    def close(self):
        """
        Waits all the messages to be consumed, kills the thread
        and closes the file writer. Closing a child logger closes
        the shared sink.
        """
        root = self._root
        if root.filewriter is None or root.finished:
            return
        root.queue.join()
        root.finished = True
        root.filewriter.close()
