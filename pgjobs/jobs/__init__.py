"""
Job processing machinery.

This package provides the worker side of the queue:
- Leaky bucket throttling of lock queries
- Cursor-guided advisory locking of the next eligible job
- Workers that run handlers, retire jobs and back off failures
- Worker pools with bounded graceful shutdown
"""
