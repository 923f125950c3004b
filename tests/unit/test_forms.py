from __future__ import annotations

from unittest.mock import MagicMock

from autoreach.pipeline.forms import FormHandler, parse_forms, score_contact_form

CONTACT_PAGE = """
<body>
  <form id="newsletter" action="/subscribe">
    <input type="email" name="email">
    <button type="submit">Subscribe</button>
  </form>
  <form id="contact-form" action="/contact/send" method="POST">
    <label for="n">Your name</label><input id="n" name="name" required>
    <input type="email" name="email" placeholder="you@example.com" required>
    <input type="text" name="company_name">
    <input type="hidden" name="csrf" value="x">
    <input type="checkbox" name="agree">
    <textarea name="message"></textarea>
    <input type="submit" value="Send">
  </form>
</body>
"""


def test_parse_forms_builds_scoped_selectors():
    forms = parse_forms(CONTACT_PAGE)
    assert [f.selector for f in forms] == ['form[id="newsletter"]', 'form[id="contact-form"]']

    contact = forms[1]
    assert contact.method == "post"
    assert contact.action == "/contact/send"
    names = [f.name for f in contact.fields]
    assert names == ["name", "email", "company_name", "agree", "message"]
    assert contact.fields[0].label == "Your name"
    assert contact.fields[0].required is True
    assert contact.fields[1].selector == 'form[id="contact-form"] >> [name="email"]'
    assert contact.fields[4].type == "textarea"
    assert contact.submit_selector == 'form[id="contact-form"] >> input[type="submit"]'
    assert forms[0].submit_selector == 'form[id="newsletter"] >> button[type="submit"]'


def test_unnamed_forms_fall_back_to_position():
    forms = parse_forms("<form><input name='q'></form><form><input name='q'></form>")
    assert [f.selector for f in forms] == ["form >> nth=0", "form >> nth=1"]


def test_contact_form_scoring():
    newsletter, contact = parse_forms(CONTACT_PAGE)
    assert score_contact_form(newsletter) == (False, 0.0)
    is_contact, confidence = score_contact_form(contact)
    assert is_contact is True
    assert confidence == 1.0


def test_analyze_picks_contact_forms():
    analysis = FormHandler().analyze(CONTACT_PAGE)
    assert len(analysis.forms) == 2
    assert [f.selector for f in analysis.contact_forms] == ['form[id="contact-form"]']
    assert analysis.best.selector == 'form[id="contact-form"]'


def test_value_for_maps_categories():
    form = parse_forms(CONTACT_PAGE)[1]
    data = FormHandler.default_contact_data("Acme")
    by_name = {f.name: FormHandler.value_for(f, data) for f in form.fields}
    assert by_name["name"] == "Test User from Acme"
    assert by_name["email"] == "test@example.com"
    assert by_name["company_name"] == "Acme"
    assert by_name["message"].startswith("Hello")


def test_fill_skips_choice_inputs_and_survives_field_errors():
    form = parse_forms(CONTACT_PAGE)[1]
    session = MagicMock()
    session.fill.side_effect = [None, RuntimeError("detached"), None, None]

    filled = FormHandler().fill(session, form, FormHandler.default_contact_data("Acme"))

    assert filled == 3
    selectors = [c.args[0] for c in session.fill.call_args_list]
    assert 'form[id="contact-form"] >> [name="agree"]' not in selectors
    assert len(selectors) == 4


def test_submit_reports_confirmation():
    form = parse_forms(CONTACT_PAGE)[1]
    session = MagicMock()
    session.url = "https://example.com/contact"
    session.content.return_value = "<body><h1>Thank you for your message</h1></body>"

    result = FormHandler().submit(session, form)

    session.click.assert_called_once_with(form.submit_selector)
    assert result.attempted is True
    assert result.success is True


def test_submit_without_control_is_skipped():
    form = parse_forms("<form id='f'><input name='email'></form>")[0]
    result = FormHandler().submit(MagicMock(), form)
    assert result.attempted is False
    assert result.skipped_reason == "no submit control found"


def test_check_submission():
    assert FormHandler.check_submission("<body>送信完了しました</body>")
    assert not FormHandler.check_submission("<body>Error: email is required</body>")
    assert FormHandler.check_submission(
        "<body>Welcome</body>",
        before_url="https://example.com/contact",
        after_url="https://example.com/done",
    )
    assert FormHandler.check_submission("<body>Contact us</body>")
