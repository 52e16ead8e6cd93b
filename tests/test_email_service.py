from keyshop.services.email_service import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def sendmail(self, sender, recipients, message):
        self.sent.append((sender, recipients, message))


def test_key_delivery_email_is_sent_over_smtp():
    FakeSMTP.instances = []
    service = EmailService(
        host="smtp.example.com",
        port=2525,
        username="mailer",
        password="secret",
        use_tls=True,
        sender="keys@example.com",
        smtp_factory=FakeSMTP,
    )

    assert service.send_key_delivery_email("buyer@example.com", "Elden Ring", "AAAA-BBBB", "Steam") is True

    server = FakeSMTP.instances[0]
    assert (server.host, server.port) == ("smtp.example.com", 2525)
    assert server.started_tls is True
    assert server.logged_in == ("mailer", "secret")
    sender, recipients, message = server.sent[0]
    assert sender == "keys@example.com"
    assert recipients == ["buyer@example.com"]
    assert "Subject: Your Game Key: Elden Ring" in message
    assert "AAAA-BBBB" in message


def test_delivery_is_skipped_without_smtp_host():
    FakeSMTP.instances = []
    service = EmailService(host="", smtp_factory=FakeSMTP)

    assert service.enabled is False
    assert service.send_key_delivery_email("buyer@example.com", "Hades", "KEY", "PC") is False
    assert FakeSMTP.instances == []
