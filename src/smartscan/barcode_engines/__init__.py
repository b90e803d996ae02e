# smartscan/barcode_engines/__init__.py
