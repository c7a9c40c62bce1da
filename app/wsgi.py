from app.ordersync import create_app

app = create_app()
