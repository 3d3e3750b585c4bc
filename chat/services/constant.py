MODERATION_MESSAGE_DEFAULT = (
    "I'm sorry, but I can't respond to that message. "
    "Please keep the conversation respectful and on topic. "
    "If you need urgent help, please contact your local emergency services."
)
