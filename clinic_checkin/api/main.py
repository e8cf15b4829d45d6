from clinic_checkin.api.app import create_app

app = create_app()
