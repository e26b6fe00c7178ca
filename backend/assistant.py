"""
Keyword chat assistant.

Replies come from a fixed table of trigger phrases; the first entry whose
trigger appears in the lower-cased message wins, otherwise a canned reply is
picked at random.
"""
import random
from typing import List, Optional, Sequence, Tuple

WELCOME_MESSAGE = "你好！我是你的AI助手，有什麼可以幫助你的嗎？"

KEYWORD_REPLIES: List[Tuple[Tuple[str, ...], str]] = [
    (("你好", "hello"), "你好！很高興為你服務。有什麼我可以幫助你的嗎？"),
    (("幫助", "help"), "我很樂意幫助你！請告訴我你遇到的具體問題，我會盡力為你提供解決方案。"),
    (("廢料", "product"), "關於廢料相關的問題，我可以為你提供詳細的資訊和建議。請告訴我你對哪個廢料感興趣？"),
    (("訂單", "order"), "我可以幫助你處理訂單相關的問題。請告訴我你的訂單號碼或具體問題，我會為你查詢。"),
    (("價格", "price"), "關於價格資訊，我可以為你提供最新的報價。請告訴我你感興趣的廢料，我會為你查詢價格。"),
    (("賣家", "seller"), "我可以幫你找到合適的賣家。請告訴我你需要什麼類型的廢料或服務？"),
    (("買家", "buyer"), "我可以幫你找到潛在的買家。請告訴我你銷售什麼廢料？"),
    (("回收", "recycle"), "關於回收服務，我可以為你提供相關資訊。請告訴我你需要回收什麼類型的物品？"),
    # "廢料" is already claimed above, so only "waste" reaches this entry
    (("廢料", "waste"), "我可以幫你處理廢料相關的問題。請告訴我你有哪些廢料需要處理？"),
]

FALLBACK_REPLIES = [
    "我理解你的問題。讓我來幫助你解決這個問題。",
    "這是一個很好的問題！根據我的分析，我建議你...",
    "謝謝你的提問。讓我為你提供一些有用的建議。",
    "我明白你的需求。這裡有一些解決方案供你參考。",
    "這確實是一個重要的問題。讓我為你詳細解釋一下。",
    "根據你的描述，我建議你可以嘗試以下方法...",
    "我明白你的困擾。讓我為你提供一些實用的建議。",
    "這是一個常見的問題。讓我為你提供解決方案。",
]


def match_keyword(message: str) -> Optional[str]:
    lowered = message.lower()
    for triggers, reply in KEYWORD_REPLIES:
        if any(trigger in lowered for trigger in triggers):
            return reply
    return None


def generate_response(
    message: str,
    conversation_history: Optional[Sequence[dict]] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """Answer ``message``. The history is accepted for API compatibility but unused."""
    reply = match_keyword(message)
    if reply is not None:
        return reply
    return (rng or random).choice(FALLBACK_REPLIES)
