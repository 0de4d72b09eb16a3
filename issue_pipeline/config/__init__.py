"""Layered project configuration."""

from issue_pipeline.config.settings import ProjectSettings, load_project_settings, pipeline_home

__all__ = ["ProjectSettings", "load_project_settings", "pipeline_home"]
