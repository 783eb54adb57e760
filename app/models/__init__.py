from app.models.customer import Customer
from app.models.order import Order
from app.models.campaign import Campaign, CommunicationLog, Segment
