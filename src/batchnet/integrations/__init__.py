"""
Collaborators of the allocator and scheduler: host enumeration, worker
process control, owner liveness, formula providers and target probes.
"""
