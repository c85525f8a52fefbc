from .step_01_hw_detect import HwDetectStep
from .step_02_hwe_kernel import HweKernelStep
from .step_03_nic_naming import NicNamingStep
from .step_04_kvm_libvirt import KvmLibvirtStep
from .step_05_kernel_tuning import KernelTuningStep
from .step_06_libvirt_hooks import LibvirtHooksStep
from .step_07_volumes import VolumesStep
from .step_08_deploy import DeployStep
from .step_09_passthrough import PassthroughStep
from .step_10_install_cli import InstallCliStep

__all__ = [
    "HwDetectStep",
    "HweKernelStep",
    "NicNamingStep",
    "KvmLibvirtStep",
    "KernelTuningStep",
    "LibvirtHooksStep",
    "VolumesStep",
    "DeployStep",
    "PassthroughStep",
    "InstallCliStep",
]
