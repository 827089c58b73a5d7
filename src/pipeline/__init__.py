"""
Batch Compositing Pipeline

Each submitted batch runs as one background asyncio task:
1. Background fitting - once per chunk
2. Foreground fitting - on the resize pool
3. Remote compositing - bounded worker slots, retried with backoff
"""
