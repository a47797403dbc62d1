"""
Admission service for the chat task assistant.
"""
