# smartscan/ocr_backends/__init__.py
