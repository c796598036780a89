"""
Services for TopicGate
"""
