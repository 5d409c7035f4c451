from .schemas import Event, Message, TypedMessage, resolve_message
