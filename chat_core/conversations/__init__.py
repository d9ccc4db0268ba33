"""会话状态：纯 reducer 与持有状态的 ConversationStore。"""
