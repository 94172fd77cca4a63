# /cartresq/utils/metrics.py

from prometheus_client import Counter, Gauge

# All Prometheus metrics for the scheduling core are declared here.

# Scheduler engine
jobs_scheduled_counter = Counter('cartresq_jobs_scheduled_total', 'Jobs persisted to the job store', ['job_name'])
jobs_executed_counter = Counter('cartresq_jobs_executed_total', 'Jobs executed by the poller', ['job_name', 'outcome'])
jobs_cancelled_counter = Counter('cartresq_jobs_cancelled_total', 'Pending jobs removed by cancellation')
queue_depth_gauge = Gauge('cartresq_job_queue_depth', 'Jobs in the store by state', ['state'])

# Funnel and campaigns
funnel_scheduled_counter = Counter('cartresq_funnel_carts_scheduled_total', 'Carts moved to a *_scheduled marker', ['stage'])
campaign_recipients_counter = Counter('cartresq_campaign_recipients_total', 'Campaign sends enqueued', ['trigger'])

# Delivery
emails_dispatched_counter = Counter('cartresq_emails_dispatched_total', 'Outbound emails by result', ['kind', 'result'])
rate_limit_deferrals_counter = Counter('cartresq_rate_limit_deferrals_total', 'Sends re-queued by throttling', ['reason'])
