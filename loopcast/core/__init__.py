from .configuration import Configuration, PhoneProfile, load_configuration, load_configuration_async
from .device_allocator import DeviceAllocator, PoolHandle
from .environment import EnvironmentOrchestrator, PhoneEnvironment
from .errors import LoopcastError, SetupError
from .process_supervisor import HealthStatus, ProcessSupervisor, Session, SessionState
from .registry import DeviceState, ResourceRegistry
from .shutdown_coordinator import ShutdownCoordinator, ShutdownState
from .system import LoopcastSystem

__all__ = [
    'Configuration',
    'PhoneProfile',
    'load_configuration',
    'load_configuration_async',
    'DeviceAllocator',
    'PoolHandle',
    'EnvironmentOrchestrator',
    'PhoneEnvironment',
    'LoopcastError',
    'SetupError',
    'HealthStatus',
    'ProcessSupervisor',
    'Session',
    'SessionState',
    'DeviceState',
    'ResourceRegistry',
    'ShutdownCoordinator',
    'ShutdownState',
    'LoopcastSystem',
]
