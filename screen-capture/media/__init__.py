from media.codec import ImageCodec, PillowImageCodec, FIT_COVER, FIT_CONTAIN
from media.ocr import TextRecognizer, TesseractTextRecognizer
