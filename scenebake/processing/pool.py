"""Worker-keyed processor pools.

Attribute and image processors keep per-instance scratch state, so each
worker thread gets its own instance. A pool is created per compile call and
passed explicitly; there is no module-level processor state.
"""

import threading


class ProcessorPool:
    """Lazily creates one processor per calling thread.

    Args:
        factory: zero-argument callable returning a new processor
    """

    def __init__(self, factory):
        self._factory = factory
        self._local = threading.local()
        self._instances = []
        self._lock = threading.Lock()

    def get(self):
        """Processor owned by the current thread."""
        processor = getattr(self._local, 'processor', None)
        if processor is None:
            processor = self._factory()
            self._local.processor = processor
            with self._lock:
                self._instances.append(processor)
        return processor

    @property
    def instances(self):
        """Every processor created so far (for statistics)."""
        with self._lock:
            return list(self._instances)

    def __len__(self):
        with self._lock:
            return len(self._instances)
