from enum import Enum


class AuthGroupName(Enum):
    UnlockRestrictedContent = "Unlock Restricted Content"
    Moderator = "Moderator"
    WidgetManager = "Widget Manager"
