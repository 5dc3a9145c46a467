from forgechat.models.user import User
from forgechat.models.conversation import Conversation, Message
from forgechat.models.tool import Tool, ToolExecution

__all__ = ["User", "Conversation", "Message", "Tool", "ToolExecution"]
