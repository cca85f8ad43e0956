"""Backend for a web file manager confined to one root directory.

FastAPI route handlers in server.py stay thin:
- client path confinement (security.PathResolver)
- archive sniffing and extraction (archive)
- 7z creation through a bundled 7za binary (compressor)
- listings, copy/delete, temp archive sweep (workspace)

Security note:
There is no authentication. Anyone who can reach the server can read and
write everything under the configured root.
"""
