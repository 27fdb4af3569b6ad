"""Coverage trace maps and state machines for tracing test executables."""

__version__ = "0.1.0"
__all__ = ["traces", "statemachine", "instrumented", "ptrace", "linux", "engine"]