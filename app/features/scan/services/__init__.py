"""
READ THIS BEFORE ADDING A SERVICE.

Scan Services

Organized by responsibility, in the order a scan flows through them:

1. budget/ - Tier and depth limits
   - budget_policy.py: CrawlBudget per tier, depth narrowing, queue priority, time estimates

2. queue/ - Durable work queue (scan_jobs table)
   - work_queue.py: enqueue, claim (compare-and-set), retries, dead letters, stale sweep, heartbeats

3. orchestration/ - Job coordination
   - scan_coordinator.py: Drives one claimed job through the scan state machine

4. discovery/ + fetch/ - Which pages to scan
   - crawl_orchestrator.py: Budgeted breadth-first crawl, robots.txt sitemaps
   - safe_fetcher.py: httpx GET that re-checks URL safety on every redirect hop

5. scraping/ - Browser automation
   - browser.py: Headless Chrome session that renders a page into a DomSnapshot

6. audit/ - WCAG rules
   - dom_snapshot.py: Flat DOM model with computed styles and visibility
   - contrast.py: Colour parsing and contrast ratios
   - rules.py: Rule catalog (alt text, labels, keyboard, names, contrast, headings, tabindex)
   - page_auditor.py: Runs every rule over a snapshot

7. scoring/ - Results
   - scoring_engine.py: WCAG score, risk score, lawsuit probability, summary

8. progress/ - Live progress
   - progress_tracker.py: In-process state, bounded subscriber queues, Redis mirror

9. scan/ - API-facing service
   - scan_service.py: Create, status, results and delete for the HTTP routes

URL safety (app/platform/utils/url_safety.py) is shared by fetch/, discovery/,
scraping/ and scan/.
"""
