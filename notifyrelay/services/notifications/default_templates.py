from __future__ import annotations

import logging

from notifyrelay.domain.notifications import (
    ANALYSIS_COMPLETE,
    ANALYSIS_FAILED,
    CRITICAL_ALERT,
    DEFAULT_TEMPLATE_EVENT_TYPE,
    SUMMARY_REPORT,
    TEST_COMPLETION,
    TEST_FAILURE,
    Channel,
    NotificationTemplate,
)
from notifyrelay.persistence.repos.templates import TemplateStore
from notifyrelay.services.notifications.rendering import validate_template


logger = logging.getLogger(__name__)


def _template(event_type: str, channel: Channel, subject: str, body: str) -> NotificationTemplate:
    return NotificationTemplate(
        template_id=f"tpl_{event_type}_{channel.value}",
        event_type=event_type,
        channel=channel,
        subject_template=subject,
        body_template=body,
    )


DEFAULT_TEMPLATES: tuple[NotificationTemplate, ...] = (
    # Catch-all per channel so every known event type renders somewhere.
    *(
        _template(
            DEFAULT_TEMPLATE_EVENT_TYPE,
            channel,
            "Notification: {{eventType}}",
            "Event {{eventType}} ({{eventId}}) for project {{projectId}} at {{timestamp}}.",
        )
        for channel in Channel
    ),
    _template(
        TEST_COMPLETION,
        Channel.EMAIL,
        "Test Completed: {{testName}}",
        "Your test execution has completed.\n\n"
        "Test Name: {{testName}}\n"
        "Execution ID: {{executionId}}\n"
        "Status: {{status}}\n"
        "Result: {{result}}\n"
        "Duration: {{duration}}\n"
        "Timestamp: {{timestamp}}\n",
    ),
    _template(
        TEST_FAILURE,
        Channel.EMAIL,
        "Test Failed: {{testName}}",
        "Your test execution has failed. Please review the details below.\n\n"
        "Test Name: {{testName}}\n"
        "Execution ID: {{executionId}}\n"
        "Result: {{result}}\n"
        "Error: {{errorMessage}}\n"
        "Timestamp: {{timestamp}}\n",
    ),
    _template(
        TEST_FAILURE,
        Channel.IN_APP,
        "Test failed: {{testName}}",
        "{{testName}} failed: {{errorMessage}}",
    ),
    _template(
        CRITICAL_ALERT,
        Channel.EMAIL,
        "CRITICAL ALERT: {{reason}}",
        "A critical test failure has been detected that requires immediate attention.\n\n"
        "Alert: {{alertType}}\n"
        "Reason: {{reason}}\n"
        "Test Case: {{testCaseId}}\n"
        "Suite Execution: {{suiteExecutionId}}\n"
        "Affected Tests: {{affectedTests}}\n"
        "Last Failure: {{lastFailure}}\n"
        "Error: {{errorMessage}}\n",
    ),
    _template(
        CRITICAL_ALERT,
        Channel.BROADCAST,
        "CRITICAL: {{reason}}",
        "CRITICAL {{alertType}}: {{reason}}. Affected: {{affectedTests}}. Last failure {{lastFailure}}.",
    ),
    _template(
        CRITICAL_ALERT,
        Channel.SMS,
        "CRITICAL: {{reason}}",
        "CRITICAL {{alertType}}: {{reason}}. Last failure {{lastFailure}}.",
    ),
    _template(
        TEST_FAILURE,
        Channel.SMS,
        "Test failed: {{testName}}",
        "Test failed: {{testName}} ({{executionId}})",
    ),
    _template(
        ANALYSIS_COMPLETE,
        Channel.EMAIL,
        "Analysis complete: {{fileName}}",
        "Analysis of {{fileName}} finished with {{violationCount}} violations.\n"
        "Compliance score: {{complianceScore}}\n",
    ),
    _template(
        ANALYSIS_FAILED,
        Channel.EMAIL,
        "Analysis failed: {{fileName}}",
        "Analysis of {{fileName}} failed.\nError: {{errorMessage}}\n",
    ),
    _template(
        SUMMARY_REPORT,
        Channel.EMAIL,
        "Notification summary: {{totalEvents}} events",
        "Between {{periodStart}} and {{periodEnd}} we held back {{totalEvents}} notifications.\n\n"
        "{{eventSummary}}\n",
    ),
    _template(
        SUMMARY_REPORT,
        Channel.IN_APP,
        "{{totalEvents}} notifications held back",
        "{{eventSummary}}",
    ),
)


async def seed_default_templates(store: TemplateStore, *, overwrite: bool = False) -> int:
    # Insert defaults into empty slots; existing customized templates are left alone.
    seeded = 0
    for template in DEFAULT_TEMPLATES:
        problems = validate_template(template)
        if problems:
            raise ValueError(f"invalid default template {template.template_id}: {'; '.join(problems)}")
        if not overwrite and await store.get(template.event_type, template.channel) is not None:
            continue
        await store.put(template)
        seeded += 1
    logger.info("default_templates_seeded count=%s", seeded)
    return seeded
