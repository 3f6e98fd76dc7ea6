"""Scheduler module hosting the queue pollers and maintenance tasks.

Schedule overview:
  - every 30s    - Notification job processor (stops itself when idle)
  - every 30s    - Scraping queue processor
  - 04:00 daily  - Cleanup finished notification jobs
  - 04:30 daily  - Cleanup old scraping results
"""
