import asyncio

from django.conf import settings
from django.core.management.base import BaseCommand

from chat.realtime.server import ChatServer


class Command(BaseCommand):
    help = "Run the chat WebSocket server"

    def add_arguments(self, parser):
        parser.add_argument("--host", default=settings.CHAT_WS_HOST)
        parser.add_argument("--port", type=int, default=settings.CHAT_WS_PORT)

    def handle(self, *args, **options):
        server = ChatServer(host=options["host"], port=options["port"])
        self.stdout.write(f"Starting chat WebSocket server on ws://{server.host}:{server.port}")
        try:
            asyncio.run(server.serve_forever())
        except KeyboardInterrupt:
            self.stdout.write(self.style.SUCCESS("Chat WebSocket server stopped"))
