import json

from channels.generic.websocket import AsyncWebsocketConsumer
from django.contrib.auth.models import AnonymousUser

from reservations.services.notifications import user_group


class NotificationsConsumer(AsyncWebsocketConsumer):
    """Per-user stream of waitlist offers and slot notices."""

    async def connect(self):
        user = self.scope.get("user") or AnonymousUser()
        if not user.is_authenticated:
            await self.close(code=4001)
            return
        self.group_name = user_group(user.pk)
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()
        await self.send(json.dumps({"type": "welcome", "userId": user.pk}))

    async def disconnect(self, close_code):
        if hasattr(self, "group_name"):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)

    async def notify_message(self, event):
        # event: {"type": "notify.message", "kind": ..., "waitlistId": ..., "date": ..., "time": ...}
        payload = {k: v for k, v in event.items() if k != "type"}
        await self.send(json.dumps({"type": "notification", **payload}))
