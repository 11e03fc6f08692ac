"""Image upload proxy to the external media host.

Incoming files are spooled to a temporary file, uploaded to a
Cloudinary-compatible host, and the temp file is removed on every exit path.
Only the returned durable URL is used by the chat core (as a message
payload's mediaUrl).
"""
