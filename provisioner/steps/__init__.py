"""Provisioning steps."""

from .base_step import BaseStep
from .system_prep import SystemPrepResult, SystemPrepStep
from .source import SourceResult, SourceStep, classify_git_failure
from .build import BuildStep, detect_build_output
from .service_config import NginxSiteContext, ServiceConfigStep, render_site_config
from .redeploy_script import RedeployScriptStep, render_redeploy_script
from .infrastructure import InfrastructureStep, RenderedInfra, build_infra_spec, render_user_data
from .orchestrator import ProvisionOrchestrator, provision

__all__ = [
    "BaseStep",
    "SystemPrepStep",
    "SystemPrepResult",
    "SourceStep",
    "SourceResult",
    "classify_git_failure",
    "BuildStep",
    "detect_build_output",
    "ServiceConfigStep",
    "NginxSiteContext",
    "render_site_config",
    "RedeployScriptStep",
    "render_redeploy_script",
    "InfrastructureStep",
    "RenderedInfra",
    "build_infra_spec",
    "render_user_data",
    "ProvisionOrchestrator",
    "provision",
]
