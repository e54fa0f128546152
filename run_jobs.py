# run_jobs.py
# One-off job runner for an external scheduler (e.g. Heroku Scheduler),
# for deployments that run with SCHEDULER_ENABLED=false.
import os
import sys

os.environ.setdefault('SCHEDULER_ENABLED', 'false')

from palenque import create_app, pago_expiry_job, betting_window_job

app = create_app()

JOBS = {
    'pago_expiry': pago_expiry_job,
    'betting_window': betting_window_job,
}

if __name__ == '__main__':
    if len(sys.argv) > 1:
        job_name = sys.argv[1]
        job = JOBS.get(job_name)
        if job is None:
            print(f"Unknown job: {job_name}")
            sys.exit(1)
        print(f"Scheduler: Running {job_name} job...")
        job()
        print(f"Scheduler: {job_name} job finished.")
    else:
        print(f"No job specified. Usage: python run_jobs.py <{'|'.join(JOBS)}>")
