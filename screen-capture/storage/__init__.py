from storage.store import CaptureStore
from storage.objects import ObjectStorage, S3ObjectStorage, rendition_key
from storage.mysql_storage import MySQLCaptureStore
