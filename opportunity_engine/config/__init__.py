from .settings import settings, Settings, PipelineConfig

__all__ = ['settings', 'Settings', 'PipelineConfig']
