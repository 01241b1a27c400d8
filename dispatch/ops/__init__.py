from dispatch.ops.worker_seed import apply_worker_seed, load_worker_seed

__all__ = [
    "apply_worker_seed",
    "load_worker_seed",
]
