from iot_dashboard.factory import create_app

app = create_app()
