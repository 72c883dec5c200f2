# dev_fire_pipeline.py
# ----------------------------------------------
# Drives end-to-end LOCAL tests of the per-message pipeline:
#   - classify + extract against the real SAP AI Core deployment
#   - normalise + dedup into an in-memory sheet (nothing is written to Google)
#   - trigger the workflow only if WORKFLOW_ENABLED=true
#
# Make sure your shell (or .env) has:
#   AIC_API_URL, AIC_TOKEN_URL, AIC_CLIENT_ID, AIC_CLIENT_SECRET, AIC_DEPLOYMENT_ID
#   WORKFLOW_ENABLED=false   (unless you really want workflows started)
#   LOG_STYLE=human          (easier to read locally)
# Each mail is fired twice; with a stable extraction the second pass ends as
# skipped_duplicate.
# ----------------------------------------------

from logging_setup import init_logging
init_logging()

from datetime import datetime, timezone

from pipeline.llm_client import AICoreClient
from pipeline.models import AttachmentInfo, EmailPayload
from pipeline.normalizer import parse_email_address
from pipeline.orchestrator import MailPipeline
from pipeline.store import InMemoryStore
from pipeline.workflow import WorkflowTrigger


class _NoMailbox:
    """The driver never touches a mailbox; failure mails are printed instead."""

    def send_mail(self, to, subject, body):
        print(f"\n--- would mail {to}: {subject}\n{body}")


def payload(subject, from_raw, received_at, body, attachments=()):
    name, email = parse_email_address(from_raw)
    return EmailPayload(
        subject=subject,
        from_raw=from_raw,
        from_name=name,
        from_email=email,
        to="sustainability@example.com",
        date=datetime.fromisoformat(received_at.replace("Z", "+00:00")).astimezone(timezone.utc),
        plain_body=body,
        attachments=[AttachmentInfo(name=n, content_type=t, length=s) for n, t, s in attachments],
    )


# ===============================
# TEST CASES
# ===============================
tests = [

    # ---------- ENERGY ----------

    # Electricity: explicit kWh and EUR total
    payload(
        "Ihre Stromrechnung März 2025 - Rechnung 2025-03-118",
        "Stadtwerke Nord GmbH <rechnung@stadtwerke-nord.de>",
        "2025-04-02T07:15:00Z",
        """Sehr geehrte Damen und Herren,

anbei Ihre Stromrechnung für den Abrechnungszeitraum 01.03.2025 - 31.03.2025.
Rechnungsnummer: 2025-03-118
Verbrauch: 12.480 kWh
Gesamtbetrag: 3.196,40 EUR (brutto)
""",
        [("Rechnung_2025-03-118.pdf", "application/pdf", 84211)],
    ),

    # Gas: consumption given in m3 and kWh
    payload(
        "Gas invoice GAS-77812 for February",
        "NordGas Billing <billing@nordgas.eu>",
        "2025-03-05T10:02:00Z",
        """Invoice GAS-77812
Period: 2025-02-01 to 2025-02-28
Consumption: 1,020 m3 (= 10,914 kWh)
Amount due: 1,402.77 EUR
""",
    ),

    # ---------- FUEL / TRANSPORT ----------

    # Fleet fuel card statement in USD (must be converted to EUR)
    payload(
        "Fuel card statement FC-2025-0419",
        "FleetFuel Inc. <statements@fleetfuel.com>",
        "2025-04-20T16:40:00Z",
        """Statement FC-2025-0419
Diesel: 842.5 litres
Total: USD 1,487.10
Vehicles: 4 (road transport, approx. 6,300 km)
""",
    ),

    # ---------- CLOUD ----------

    # Cloud bill with compute hours, storage and egress
    payload(
        "Your cloud invoice INV-CL-55012 is available",
        "Cloud Billing <no-reply@cloud.example>",
        "2025-05-03T03:00:00Z",
        """Invoice INV-CL-55012 (April 2025)
Compute: 1,440 instance hours
Storage: 520 GB-month
Data transfer out: 86 GB
Total: 612.35 EUR
""",
    ),

    # ---------- NOT RELEVANT ----------

    # Marketing newsletter
    payload(
        "Spring webinar series: register now",
        "Events Team <events@vendor.example>",
        "2025-04-10T09:00:00Z",
        """Join our spring webinar series on digital transformation.
Seats are limited, register today!""",
    ),

    # Internal meeting minutes
    payload(
        "Minutes: facilities sync (10 Apr)",
        "Office Manager <office@example.com>",
        "2025-04-10T12:30:00Z",
        """Minutes attached. Next sync in two weeks. No invoices discussed.""",
    ),
]


def fire(pipeline, p):
    print("\n=== TEST MAIL:", p.subject, "===")
    outcome = pipeline.process_payload(p)
    print("state:", outcome.state.value, "| class:", outcome.category)
    if outcome.record is not None:
        print("record:", outcome.record.to_context())
    if outcome.trigger is not None:
        print("trigger:", outcome.trigger.reason.value, outcome.trigger.instance_id or "")
    return outcome


if __name__ == "__main__":
    store = InMemoryStore()
    pipeline = MailPipeline(
        mailbox=_NoMailbox(),
        store=store,
        llm=AICoreClient(),
        workflow=WorkflowTrigger(),
    )
    for p in tests:
        fire(pipeline, p)
    print("\n##### second pass (expect duplicates) #####")
    for p in tests:
        fire(pipeline, p)
    print(f"\nrows in sheet: {len(store.rows)}")
