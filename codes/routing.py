from django.urls import path

from .consumers import BulkUploadProgressConsumer

websocket_urlpatterns = [
    path("ws/codes/bulk-upload/", BulkUploadProgressConsumer.as_asgi(), name="bulk-upload-progress"),
]
