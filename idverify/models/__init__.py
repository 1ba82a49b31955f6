# ID card OCR & face models
# This package contains:
#   - text_recognizer: Tesseract/EasyOCR wrapper + multi-configuration document reader
#   - best_attempt: best-of-N fold over noisy attempts
#   - field_extractor: names, date of birth, document number from OCR text
#   - extraction_scorer: ranking score for extraction candidates
#   - reference_corpus: sample-card values used for regression checks
#   - face_pipeline: DeepFace face locator + thumbnail cropping
#   - face_comparator: descriptor distance -> 0-100 similarity
#   - visual_similarity: SSIM fallback when a descriptor is missing
#   - records: session records
