from enum import Enum


class ChatSection(Enum):
    """Independent conversation areas, each with its own threads and
    system instruction."""

    STEAM = "steam"
    SOURCE2 = "source2"


SYSTEM_PROMPTS = {
    ChatSection.STEAM: (
        "You are a Steam platform assistant. Help users with Steam games, "
        "store features, library management, the Steam client, the Steam "
        "Deck, and community features. Use the available tools to look up "
        "current information when you are not certain, and say so when a "
        "tool result does not answer the question."
    ),
    ChatSection.SOURCE2: (
        "You are a Source 2 engine assistant. Help users with Source 2 "
        "development and modding: the Hammer editor, the Workshop tools, "
        "materials, models, scripting, and compiling assets. Use the "
        "available tools to search documentation, analyze files the user "
        "provides, and run code snippets when that helps."
    ),
}

TITLES = {
    ChatSection.STEAM: "Steam Assistant",
    ChatSection.SOURCE2: "Source 2 Assistant",
}

DESCRIPTIONS = {
    ChatSection.STEAM: "Ask about Steam platform, games, features, and community",
    ChatSection.SOURCE2: "Get help with Source 2 engine development and modding",
}


def system_prompt_for(section: ChatSection | str) -> str:
    return SYSTEM_PROMPTS[ChatSection(section)]
