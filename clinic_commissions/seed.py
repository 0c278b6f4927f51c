from datetime import date
from decimal import Decimal

from clinic_commissions import db
from clinic_commissions.calculator.schema import BeneficiaryType
from clinic_commissions.models import (
    AppSetting, Appointment, CommissionRule, ProcedurePrice, StaffMember,
)
from clinic_commissions.repository.base import normalize_rule_fields

DEFAULT_SETTINGS = {
    # key: [value, description, value_type]
    'DEFAULT_PROCEDURE_PRICE': ['150.00', 'Preço usado quando o procedimento não consta da tabela de preços', 'decimal'],
    'REQUIRE_PROFESSIONAL_RULE': ['true', 'Bloqueia a finalização sem regra de comissão do profissional', 'bool'],
}

DEMO_PROCEDURE_PRICES = [
    # (clinic_id, name, price, category)
    ('clinic1', 'Limpeza Dental', '200.00', 'Prevenção'),
    ('clinic1', 'Retorno', '80.00', 'Consulta'),
    ('clinic1', 'Avaliação Inicial', '150.00', 'Consulta'),
    ('clinic1', 'Implante Unitário', '3500.00', 'Implantodontia'),
    ('clinic1', 'Clareamento', '800.00', 'Estética'),
    ('clinic1', 'Tratamento de Canal', '650.00', 'Endodontia'),
    ('clinic2', 'Limpeza Dental', '180.00', 'Prevenção'),
    ('clinic2', 'Clareamento', '750.00', 'Estética'),
    ('clinic2', 'Alinhadores (arcada)', '2500.00', 'Ortodontia'),
    ('clinic2', 'Aplicação de Toxina Botulínica (ml)', '150.00', 'Harmonização'),
]

DEMO_STAFF = [
    # (id, clinic_id, name, role)
    ('prof1', 'clinic1', 'Dr. Carlos Mendes', BeneficiaryType.PROFESSIONAL),
    ('staff1', 'clinic1', 'Ana Souza', BeneficiaryType.RECEPTION),
    ('staff2', 'clinic1', 'Carlos Vendas', BeneficiaryType.SELLER),
    ('prof2', 'clinic2', 'Dra. Ana Costa', BeneficiaryType.PROFESSIONAL),
    ('staff3', 'clinic2', 'Mariana Atendimento', BeneficiaryType.RECEPTION),
    ('staff4', 'clinic2', 'João Comercial', BeneficiaryType.SELLER),
]

DEMO_RULES = [
    dict(clinic_id='clinic1', beneficiary_type='professional', calculation_type='percentage', value='30',
         notes='Comissão padrão para todos os profissionais'),
    dict(clinic_id='clinic1', beneficiary_type='professional', professional_id='prof1',
         procedure='Implante Unitário', calculation_type='percentage', value='45',
         notes='Comissão especial para implantes'),
    dict(clinic_id='clinic1', beneficiary_type='professional', day_of_week='saturday',
         calculation_type='fixed', value='50', notes='Adicional fixo para plantões aos sábados'),
    dict(clinic_id='clinic1', beneficiary_type='seller', calculation_type='percentage', value='5',
         notes='Comissão de 5% para vendedor responsável pelo lead'),
    dict(clinic_id='clinic2', beneficiary_type='professional', calculation_type='percentage', value='35'),
    dict(clinic_id='clinic2', beneficiary_type='professional', professional_id='prof2',
         procedure='Clareamento', calculation_type='percentage', value='45',
         notes='Comissão especial para clareamentos'),
    dict(clinic_id='clinic2', beneficiary_type='professional', procedure='Alinhadores (arcada)',
         calculation_type='fixed', calculation_unit='arch', value='300', notes='R$300 por arcada tratada'),
    dict(clinic_id='clinic2', beneficiary_type='professional', procedure='Aplicação de Toxina Botulínica (ml)',
         calculation_type='fixed', calculation_unit='ml', value='25', notes='R$25 por ml aplicado'),
    dict(clinic_id='clinic2', beneficiary_type='seller', calculation_type='percentage', value='4',
         notes='Comissão de 4% para vendedor responsável'),
]

DEMO_APPOINTMENTS = [
    # (id, clinic_id, professional_id, professional_name, procedure, date, seller_id, lead_source)
    ('apt1', 'clinic1', 'prof1', 'Dr. Carlos Mendes', 'Implante Unitário', date(2025, 1, 15), 'staff2', 'instagram'),
    ('apt2', 'clinic1', 'prof1', 'Dr. Carlos Mendes', 'Limpeza Dental', date(2025, 1, 18), None, None),
    ('apt3', 'clinic2', 'prof2', 'Dra. Ana Costa', 'Aplicação de Toxina Botulínica (ml)', date(2025, 1, 20),
     'staff4', 'google'),
]


def seed_data():
    """Populates the database with default settings and a demo clinic. Safe to re-run."""
    for key, data in DEFAULT_SETTINGS.items():
        setting = AppSetting.query.filter_by(key=key).first()
        if not setting:  # Only add if it doesn't exist
            setting = AppSetting(key=key, value=data[0], description=data[1], value_type=data[2])
            db.session.add(setting)
            print(f'Seeding setting: {key}')

    if ProcedurePrice.query.count() == 0:
        print('Seeding demo procedure prices...')
        for clinic_id, name, price, category in DEMO_PROCEDURE_PRICES:
            db.session.add(ProcedurePrice(clinic_id=clinic_id, name=name, price=Decimal(price), category=category))

    if StaffMember.query.count() == 0:
        print('Seeding demo staff...')
        for staff_id, clinic_id, name, role in DEMO_STAFF:
            db.session.add(StaffMember(id=staff_id, clinic_id=clinic_id, name=name, role=role))

    if CommissionRule.query.count() == 0:
        print('Seeding demo commission rules...')
        for fields in DEMO_RULES:
            db.session.add(CommissionRule(**normalize_rule_fields(fields)))

    if Appointment.query.count() == 0:
        print('Seeding demo appointments...')
        for apt_id, clinic_id, prof_id, prof_name, procedure, day, seller_id, lead in DEMO_APPOINTMENTS:
            db.session.add(Appointment(
                id=apt_id, clinic_id=clinic_id, professional_id=prof_id, professional_name=prof_name,
                procedure_name=procedure, date=day, seller_id=seller_id, lead_source=lead,
            ))

    db.session.commit()
    print('Seeding complete.')
