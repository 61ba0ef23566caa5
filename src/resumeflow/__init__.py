"""
resumeflow (rfw) - Resumable sequential workflow engine

Runs multi-step automations one task at a time with:
- Encrypted, tamper-evident checkpoints after every task transition
- Per-task error policy (stop or continue)
- Resume after crashes and host restarts
- Isolated task bodies with back-pressured output streaming
"""

__version__ = "0.1.0"
__package_name__ = "resumeflow"
__short_name__ = "rfw"
