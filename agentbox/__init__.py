"""
Agentbox — sandboxed execution and orchestration for coding agents.

Three layers live here:

  permissions/    risk scoring of commands and the policy gate in front of
                  every mutating sandbox operation
  execution/      the Executor contract and its native, container and
                  dev-container backends, plus environment auto-detection
  orchestration/  the multi-agent scheduler (parallel, sequential, DAG)

Terminal UI, LLM clients and conversation storage are collaborators that live
outside this package.
"""

__version__ = "0.4.0"
