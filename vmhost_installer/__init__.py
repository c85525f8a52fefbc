"""vmhost-installer: resumable provisioning of appliance VMs on a KVM host.

Core design goals:
- State-driven and resumable across host reboots
- Idempotent steps that detect an already-achieved end state
- Hardware-anchored NIC identities that survive interface renames
- NUMA-aware CPU partitioning across appliance VMs
- Centralized logging
"""

__all__ = []
