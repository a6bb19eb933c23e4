"""Infrastructure layer for uploads app.

This package contains integrations with external systems:
- Object storage backends (S3/MinIO/R2) and the presign worker
- Image decoding, resizing and encoding (Pillow)
- Preview thumbnails on local disk

Keep infrastructure concerns separate from the queue logic.
"""
