import gender_guesser.detector as gender_detector
from loguru import logger

_LABELS = {
    "male": "male",
    "mostly_male": "male",
    "female": "female",
    "mostly_female": "female",
}


class GenderClassifier:
    """First-name to gender label (`male`, `female` or `unknown`)."""

    def __init__(self):
        self.detector = gender_detector.Detector(case_sensitive=False)

    def classify(self, first_name: str) -> str:
        name = (first_name or "").strip().split(" ")[0]
        if not name:
            return "unknown"
        try:
            return _LABELS.get(self.detector.get_gender(name), "unknown")
        except Exception as e:
            logger.warning(f"Gender lookup failed for {name!r}: {e}")
            return "unknown"


# Global classifier instance (the name table is loaded once)
classifier = GenderClassifier()


def infer_gender(first_name: str) -> str:
    """Classify a first name using the global classifier."""
    return classifier.classify(first_name)
