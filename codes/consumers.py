from channels.generic.websocket import AsyncJsonWebsocketConsumer

from .progress import user_group_name


class BulkUploadProgressConsumer(AsyncJsonWebsocketConsumer):
    async def connect(self):
        user = self.scope.get("user")
        if user is None or not user.is_authenticated:
            await self.close()
            return
        self.group_name = user_group_name(user.pk)
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

    async def disconnect(self, close_code):
        group_name = getattr(self, "group_name", None)
        if group_name:
            await self.channel_layer.group_discard(group_name, self.channel_name)

    async def receive_json(self, content, **kwargs):
        # Progress updates are server -> client only.
        pass

    async def bulk_upload_progress(self, event):
        await self.send_json(event.get("payload", {}))
