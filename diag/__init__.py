"""노드 진단 에이전트 클라이언트."""

from .client import DiagClient

__all__ = ["DiagClient"]
