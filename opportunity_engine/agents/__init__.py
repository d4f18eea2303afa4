"""Agent package initialization"""
from .base_agent import BaseAgent, AgentMessage

__all__ = [
    'BaseAgent',
    'AgentMessage',
]
