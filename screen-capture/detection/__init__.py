from detection.models import ChangeVerdict
from detection.engine import ChangeDetector
