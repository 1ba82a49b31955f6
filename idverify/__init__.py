"""ID card + selfie verification: OCR field extraction, face matching, age check."""

__version__ = "0.1.0"
