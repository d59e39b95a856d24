"""
Services - 외부 협력자 (Task Store, 알림 Sink, Redis, LLM)
"""
