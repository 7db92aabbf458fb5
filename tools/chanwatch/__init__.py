"""
chanwatch – Follow image board threads and record every change.

Supports:
  • Polling 4chan and 2ch board catalogs and threads
  • Structural diffs of threads, posts and files between polls
  • Ordered create/modify/delete events for every change
  • Persisting the observed state in PostgreSQL and resuming from it
  • Stashing attachments and thumbnails in MinIO/S3
"""
