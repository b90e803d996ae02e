# setup.py
from setuptools import setup, find_packages
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="smartscan",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src", include=["smartscan", "smartscan.*"]),
    author="Phuoc Nguyen",
    description="Barcode first label scanning with an OCR fallback, driven by an asyncio state machine.",
    long_description=long_description,
    long_description_content_type='text/markdown',
    python_requires=">=3.8",

    install_requires=[
        "easyocr",
        "torch",
        "torchvision",
        "PyMuPDF",
        "tqdm",
        "Pillow",
        "numpy",
        "pytesseract",
        "opencv-python",
        "pyzbar",
        "zxing-cpp",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        'console_scripts': [
            'smartscan=smartscan.cli:main',
        ],
    },
)
