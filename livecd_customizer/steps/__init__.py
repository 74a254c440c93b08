from .step_10_sanity_checks import SanityChecksStep
from .step_20_install_prerequisites import InstallPrerequisitesStep
from .step_30_extract import ExtractStep
from .step_40_prepare_chroot import PrepareChrootStep
from .step_50_execute_chroot import ExecuteChrootStep
from .step_60_repack import RepackStep
from .step_70_finalize import FinalizeStep

__all__ = [
    "SanityChecksStep",
    "InstallPrerequisitesStep",
    "ExtractStep",
    "PrepareChrootStep",
    "ExecuteChrootStep",
    "RepackStep",
    "FinalizeStep",
]
