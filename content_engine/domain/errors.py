class JobError(Exception):
    """Base exception for content pipeline errors."""
    pass

class ConfigurationError(JobError):
    pass

class NotFoundError(JobError):
    def __init__(self, kind, ident):
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident

class JobNotFoundError(NotFoundError):
    def __init__(self, job_id):
        super().__init__("Job", job_id)

class InvalidJobError(JobError):
    """Request or payload can never be executed as given."""
    pass

class StorageError(JobError):
    pass

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class StaleRunError(JobError):
    """The job was taken over by another run while this one was executing."""
    def __init__(self, job_id, run_id):
        super().__init__(f"Run {run_id} no longer owns job {job_id}")
        self.job_id = job_id
        self.run_id = run_id

class PolicyBlockedError(JobError):
    """Execution blocked by an admin kill-switch; carries the setting tag."""
    def __init__(self, tag: str):
        super().__init__(tag)
        self.tag = tag

class GenerationError(JobError):
    pass
